from __future__ import annotations

import json
import logging
import re
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from settlement.core.config import settings

_JOB_RUN_ID_CTX: ContextVar[str | None] = ContextVar("job_run_id", default=None)

_SENSITIVE_PATTERNS = [
    re.compile(r"(authorization\s*[:=]\s*bearer\s+)([^\s\"]+)", re.IGNORECASE),
    re.compile(r"(token\s*[:=]\s*)([^\s\",}]+)", re.IGNORECASE),
    re.compile(r"(secret\s*[:=]\s*)([^\s\",}]+)", re.IGNORECASE),
    re.compile(r"\b(sk_(?:live|test)_)([A-Za-z0-9]+)"),
]


def start_job_run(job_name: str) -> str:
    """Tag every log record of the current job run with a fresh id."""
    run_id = f"{job_name}-{uuid.uuid4().hex[:12]}"
    _JOB_RUN_ID_CTX.set(run_id)
    return run_id


def get_job_run_id() -> str | None:
    return _JOB_RUN_ID_CTX.get()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "job_run_id": getattr(record, "job_run_id", None) or get_job_run_id(),
            "module": record.name,
            "message": self._mask(record.getMessage()),
        }
        for key in ("booking_id", "payout_id", "guide_id", "transfer_id"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self._mask(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)

    def _mask(self, value: str) -> str:
        masked = value
        for pattern in _SENSITIVE_PATTERNS:
            masked = pattern.sub(r"\1***", masked)
        return masked


def configure_logging(level: str | None = None) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "celery"):
        logging.getLogger(logger_name).setLevel(level)
    # stripe logs request bodies at DEBUG
    logging.getLogger("stripe").setLevel(max(logging.getLevelName(level), logging.INFO))
