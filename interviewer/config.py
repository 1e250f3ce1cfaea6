import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    # API
    "api_provider": "deepseek",  # "deepseek", "openai", "openrouter", "custom"
    "api_key": "",
    "base_url": "https://api.deepseek.com/v1",
    "model": "deepseek-chat",
    "api_extra_headers": {},  # Optional extra headers passed to the OpenAI-compatible client.
    "api_fallback_enabled": True,
    # Ordered fallback routes (each entry mirrors primary API fields).
    # Example:
    # [{"provider":"openai","api_key":"...","base_url":"https://api.openai.com/v1","model":"gpt-4o-mini"}]
    "api_routes": [],

    # Agent
    "reply_language": "Traditional Chinese (zh-TW)",
    "interview_max_iterations": 5,
    "intake_max_iterations": 3,

    # Intake admission
    "intake_session_ttl_seconds": 300.0,
    "session_sweep_interval_seconds": 60.0,
    "intake_sessions_per_ip": 5,
    "intake_rate_window_seconds": 600.0,
    "intake_max_turns": 20,

    # Interview access; empty disables the check.
    "interview_access_token": "",

    # Transcription
    "transcription_backend": "openai",  # "openai", "local", "off"
    "transcription_language": "zh",
    "transcription_model": "whisper-1",
    "whisper_model_size": "small",
    "whisper_device": "cpu",  # "cpu" or "cuda"
    "audio_max_pending_bytes": 25 * 1024 * 1024,
    "audio_archive_timeout_seconds": 10.0,

    # Storage
    "data_dir": "",

    "verbose_logging": False,
}


_API_PROVIDER_PRESETS: dict[str, dict[str, object]] = {
    "deepseek": {
        "base_url": "https://api.deepseek.com/v1",
        "model": "deepseek-chat",
        "api_key_env": "DEEPSEEK_API_KEY",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "deepseek/deepseek-chat",
        "api_key_env": "OPENROUTER_API_KEY",
    },
    "custom": {},
}


def get_config_path() -> Path:
    configured = os.environ.get("INTERVIEWER_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()
    return (Path.home() / ".interviewer" / "settings.json").resolve()


def get_data_dir(cfg: dict | None = None) -> Path:
    configured = os.environ.get("INTERVIEWER_DATA_DIR") or str((cfg or {}).get("data_dir") or "")
    if configured:
        data_dir = Path(configured).expanduser()
    else:
        data_dir = Path.home() / ".interviewer" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _normalize_api_provider(provider: str | None) -> str:
    p = (provider or "").strip().casefold()
    if not p:
        return "custom"
    p = p.replace("-", "_").replace(" ", "_")
    if p in ("open_router",):
        p = "openrouter"
    if p in ("deep_seek",):
        p = "deepseek"
    if p not in _API_PROVIDER_PRESETS:
        return "custom"
    return p


def _infer_provider_from_base_url(base_url: str | None) -> str:
    u = (base_url or "").strip().casefold()
    if not u:
        return "custom"
    if "api.deepseek.com" in u:
        return "deepseek"
    if "api.openai.com" in u:
        return "openai"
    if "openrouter.ai" in u:
        return "openrouter"
    return "custom"


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except Exception:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except Exception:
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except Exception:
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_choice(value: object, choices: set[str], default: str) -> str:
    s = _coerce_str(value, default).lower()
    return s if s in choices else default


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None

    base_url_raw = _coerce_str(value.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(value.get("provider"), ""))
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = base_url_raw or str(preset.get("base_url") or "")
    model = _coerce_str(
        value.get("model"),
        str(preset.get("model") or DEFAULT_CONFIG["model"]),
        max_len=512,
    ) or str(DEFAULT_CONFIG["model"])
    if not base_url:
        return None

    return {
        "provider": provider,
        "api_key": _coerce_str(value.get("api_key"), "", max_len=4096),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(value.get("api_extra_headers")),
        "enabled": _coerce_bool(value.get("enabled"), True),
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    provider = _normalize_api_provider(_coerce_str(src.get("api_provider"), str(DEFAULT_CONFIG["api_provider"])))
    base_url_raw = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048)
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_provider"] = provider
    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = base_url_raw or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(
        src.get("api_fallback_enabled"),
        bool(DEFAULT_CONFIG["api_fallback_enabled"]),
    )
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))

    out["reply_language"] = (
        _coerce_str(src.get("reply_language"), str(DEFAULT_CONFIG["reply_language"]), max_len=80)
        or str(DEFAULT_CONFIG["reply_language"])
    )
    out["interview_max_iterations"] = _coerce_int_in_range(src.get("interview_max_iterations"), 5, min_v=1, max_v=20)
    out["intake_max_iterations"] = _coerce_int_in_range(src.get("intake_max_iterations"), 3, min_v=1, max_v=20)

    out["intake_session_ttl_seconds"] = _coerce_float_in_range(
        src.get("intake_session_ttl_seconds"), 300.0, min_v=5.0, max_v=86400.0
    )
    out["session_sweep_interval_seconds"] = _coerce_float_in_range(
        src.get("session_sweep_interval_seconds"), 60.0, min_v=1.0, max_v=3600.0
    )
    out["intake_sessions_per_ip"] = _coerce_int_in_range(src.get("intake_sessions_per_ip"), 5, min_v=1, max_v=1000)
    out["intake_rate_window_seconds"] = _coerce_float_in_range(
        src.get("intake_rate_window_seconds"), 600.0, min_v=1.0, max_v=86400.0
    )
    out["intake_max_turns"] = _coerce_int_in_range(src.get("intake_max_turns"), 20, min_v=1, max_v=500)

    out["interview_access_token"] = _coerce_str(src.get("interview_access_token"), "", max_len=512)

    out["transcription_backend"] = _coerce_choice(
        src.get("transcription_backend"),
        {"openai", "local", "off"},
        str(DEFAULT_CONFIG["transcription_backend"]),
    )
    out["transcription_language"] = (
        _coerce_str(src.get("transcription_language"), "zh", max_len=16) or "zh"
    )
    out["transcription_model"] = (
        _coerce_str(src.get("transcription_model"), "whisper-1", max_len=128) or "whisper-1"
    )
    out["whisper_model_size"] = _coerce_str(src.get("whisper_model_size"), "small", max_len=64) or "small"
    out["whisper_device"] = _coerce_choice(src.get("whisper_device"), {"cpu", "cuda"}, "cpu")
    out["audio_max_pending_bytes"] = _coerce_int_in_range(
        src.get("audio_max_pending_bytes"),
        int(DEFAULT_CONFIG["audio_max_pending_bytes"]),
        min_v=1024,
        max_v=200 * 1024 * 1024,
    )
    out["audio_archive_timeout_seconds"] = _coerce_float_in_range(
        src.get("audio_archive_timeout_seconds"), 10.0, min_v=0.5, max_v=300.0
    )

    out["data_dir"] = _coerce_str(src.get("data_dir"), "", max_len=2048)
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), False)

    return out


def resolve_api_key_for_provider(provider: str, explicit_key: object) -> str:
    api_key = _coerce_str(explicit_key, "", max_len=4096)
    if api_key:
        return api_key

    preset = _API_PROVIDER_PRESETS.get(_normalize_api_provider(provider), {})
    env_name = preset.get("api_key_env")
    if isinstance(env_name, str) and env_name:
        api_key = (os.environ.get(env_name) or "").strip()
        if api_key:
            return api_key

    return ""


def _effective_api_route_from_values(values: dict[str, object]) -> dict[str, object]:
    base_url_raw = _coerce_str(values.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(values.get("provider"), ""))
    inferred = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred != "custom":
        provider = inferred
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = (
        base_url_raw
        or (preset.get("base_url") if isinstance(preset.get("base_url"), str) else "")
        or str(DEFAULT_CONFIG["base_url"])
    )
    model = (
        _coerce_str(values.get("model"), "", max_len=512)
        or (preset.get("model") if isinstance(preset.get("model"), str) else "")
        or str(DEFAULT_CONFIG["model"])
    )

    return {
        "provider": provider,
        "api_key": resolve_api_key_for_provider(provider, values.get("api_key")),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(values.get("api_extra_headers")),
        "enabled": _coerce_bool(values.get("enabled"), True),
    }


def effective_api_routes(cfg: dict) -> list[dict[str, object]]:
    """Primary route plus enabled fallbacks, de-duplicated, keyless routes dropped."""
    raw_primary = {
        "provider": cfg.get("api_provider"),
        "api_key": cfg.get("api_key"),
        "base_url": cfg.get("base_url"),
        "model": cfg.get("model"),
        "api_extra_headers": cfg.get("api_extra_headers"),
        "enabled": True,
    }
    candidates: list[dict[str, object]] = [_effective_api_route_from_values(raw_primary)]
    for route in _coerce_api_routes_list(cfg.get("api_routes")):
        candidates.append(_effective_api_route_from_values(route))

    out: list[dict[str, object]] = []
    seen: set[tuple[str, str, str, str]] = set()
    for item in candidates:
        if not _coerce_bool(item.get("enabled"), True):
            continue
        api_key = _coerce_str(item.get("api_key"), "", max_len=4096)
        if not api_key:
            continue
        sig = (
            str(item.get("provider") or "custom"),
            str(item.get("base_url") or ""),
            str(item.get("model") or ""),
            api_key,
        )
        if sig in seen:
            continue
        seen.add(sig)
        out.append(
            {
                "provider": sig[0],
                "api_key": api_key,
                "base_url": sig[1],
                "model": sig[2],
                "api_extra_headers": _coerce_headers(item.get("api_extra_headers")),
            }
        )
        if len(out) >= 8:
            break

    return out


def load_config(path: Path | None = None) -> dict:
    config_path = path or get_config_path()
    loaded: dict = {}
    try:
        if config_path.is_file():
            data = json.loads(config_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    return sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict, path: Path | None = None) -> None:
    config_path = path or get_config_path()
    clean_cfg = sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = config_path.with_suffix(config_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(config_path)
    except Exception:
        logger.exception("Failed to save settings file")
        raise
