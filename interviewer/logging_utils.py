import logging
import time
from typing import Any

logger = logging.getLogger("interviewer")
important_logger = logging.getLogger("interviewer.IMPORTANT")

_IMPORTANT_LAST_BY_KEY: dict[str, float] = {}
_DEDUPE_MAX_KEYS = 512
_DEDUPE_RETENTION_S = 600.0
_NOISY_LOGGERS = (
    "faster_whisper",
    "uvicorn.access",
    "httpx",
    "openai",
)


def _safe_log_value(value: Any, *, max_len: int = 96) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    s = str(value).strip()
    if not s:
        return "-"
    s = " ".join(s.split())
    if len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s


def _prune_dedupe_keys(now_ts: float, *, keep_s: float) -> None:
    stale = [k for k, ts in _IMPORTANT_LAST_BY_KEY.items() if now_ts - ts > keep_s]
    for k in stale:
        del _IMPORTANT_LAST_BY_KEY[k]


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    try:
        ev = _safe_log_value(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0:
            token = f"{ev}|{dedupe_key}"
            now_ts = time.time()
            prev_ts = _IMPORTANT_LAST_BY_KEY.get(token, 0.0)
            if now_ts - prev_ts < float(dedupe_window_s):
                return
            _IMPORTANT_LAST_BY_KEY[token] = now_ts
            if len(_IMPORTANT_LAST_BY_KEY) > _DEDUPE_MAX_KEYS:
                _prune_dedupe_keys(now_ts, keep_s=max(_DEDUPE_RETENTION_S, float(dedupe_window_s)))

        if fields:
            parts = [f"{k}={_safe_log_value(v)}" for k, v in sorted(fields.items())]
            important_logger.log(level, f"IMPORTANT {ev} | " + " ".join(parts))
        else:
            important_logger.log(level, f"IMPORTANT {ev}")
    except Exception:
        logger.exception("Failed to emit important log")


def apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    # Package logs stay at INFO; verbose mode enables DEBUG details.
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    important_logger.setLevel(logging.INFO)

    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )
