import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any

from aibot_core.config.settings import settings

_SECRET_KEYS = {"authorization", "api-key", "api_key", "api_token", "access_token", "token"}


def _truncate(value: Any, limit: int) -> Any:
    if isinstance(value, (dict, list, tuple)):
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return "[Object could not be stringified]"
        if len(text) <= limit:
            return value
        return text[:limit] + "... [truncated]"
    if isinstance(value, str) and len(value) > limit:
        return value[:limit] + "... [truncated]"
    return value


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            limit = settings.log_max_data_length
            for key, value in extra.items():
                if key.lower() in _SECRET_KEYS:
                    payload[key] = "*****"
                else:
                    payload[key] = _truncate(value, limit)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("aibot_core")
    logger.setLevel(settings.log_level)
    if any(getattr(h, "_aibot_handler", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "aibot.log", encoding="utf-8")
    fh.setLevel(settings.log_level)
    fh.setFormatter(JsonFormatter())
    fh._aibot_handler = True
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, log_ctx: dict, **fields: Any) -> None:
    """按 extra={"extra": {...}} 约定输出一条结构化日志。"""

    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
