from openai import AsyncOpenAI
import logging
import json

logger = logging.getLogger(__name__)


class LLMClient:
    """Stateless OpenAI-compatible chat client with ordered endpoint failover."""

    def __init__(
        self,
        api_key,
        base_url="https://api.deepseek.com/v1",
        model="deepseek-chat",
        default_headers=None,
        *,
        fallback_routes=None,
        failover_enabled: bool = True,
        timeout: float | None = 60.0,
    ):
        self.failover_enabled = bool(failover_enabled)
        self.timeout = timeout
        self._active_endpoint_index = 0
        self.endpoints = []

        self._add_endpoint(
            {
                "provider": "primary",
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": default_headers,
            }
        )
        for route in (fallback_routes or []):
            self._add_endpoint(route)

        if not self.endpoints:
            raise ValueError("LLMClient requires at least one endpoint with an API key.")

        self._refresh_compat_fields()

    def _add_endpoint(self, route: dict) -> None:
        if not isinstance(route, dict):
            return
        api_key = str(route.get("api_key") or "").strip()
        if not api_key:
            return

        base_url = str(route.get("base_url") or "").strip()
        model = str(route.get("model") or "").strip()
        if not base_url or not model:
            return

        headers = route.get("api_extra_headers", route.get("default_headers"))
        if not isinstance(headers, dict):
            headers = {}
        provider = str(route.get("provider") or "custom").strip().lower() or "custom"

        # Keep first occurrence by unique connection tuple.
        for cur in self.endpoints:
            if (
                cur.get("base_url") == base_url
                and cur.get("model") == model
                and cur.get("api_key") == api_key
                and cur.get("api_extra_headers") == headers
            ):
                return

        self.endpoints.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": headers,
                "client": AsyncOpenAI(
                    api_key=api_key,
                    base_url=base_url,
                    default_headers=headers,
                    timeout=self.timeout,
                ),
            }
        )

    def _refresh_compat_fields(self) -> None:
        idx = self._active_endpoint_index
        if idx < 0 or idx >= len(self.endpoints):
            idx = 0
            self._active_endpoint_index = 0
        ep = self.endpoints[idx]
        self.base_url = ep["base_url"]
        self.model = ep["model"]
        self.client = ep["client"]

    def describe(self) -> str:
        return json.dumps(
            [{"provider": ep["provider"], "base_url": ep["base_url"], "model": ep["model"]} for ep in self.endpoints],
            separators=(",", ":"),
        )

    async def chat_create(self, **kwargs):
        if not self.endpoints:
            raise RuntimeError("No LLM endpoints configured")

        errors = []
        attempt_count = len(self.endpoints) if self.failover_enabled else 1
        for idx in range(attempt_count):
            ep = self.endpoints[idx]
            req = dict(kwargs)
            req["model"] = ep["model"]
            try:
                resp = await ep["client"].chat.completions.create(**req)
                prev_idx = self._active_endpoint_index
                self._active_endpoint_index = idx
                self._refresh_compat_fields()
                if idx != prev_idx:
                    logger.warning(
                        "LLM failover selected endpoint #%s (%s %s)",
                        idx + 1,
                        ep["provider"],
                        ep["base_url"],
                    )
                return resp
            except Exception as e:
                errors.append(
                    f"#{idx + 1} {ep['provider']} {ep['base_url']} ({ep['model']}): {e}"
                )
                if idx + 1 < attempt_count:
                    logger.warning(
                        "LLM endpoint failed, trying fallback #%s: %s (%s) -> %s",
                        idx + 2,
                        ep["provider"],
                        ep["base_url"],
                        e,
                    )
                continue

        if errors:
            raise RuntimeError("All configured LLM APIs failed. " + " | ".join(errors))
        raise RuntimeError("LLM request failed")

    async def stream_chat(self, messages: list[dict], *, tools: list[dict] | None = None):
        """
        Opens a streaming chat completion. Tools are attached only when given,
        so callers can force a plain-text answer by passing None.
        """
        kwargs = {"messages": messages, "stream": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return await self.chat_create(**kwargs)
