"""Structured logging for MigrationHub.

structlog is configured once, on import: JSON lines with ISO timestamps,
logger name and level, rendered through the stdlib root logger. A
sanitization step runs before rendering so store credentials never reach a
log line, whether they appear as a ``*_database_uri`` field or embedded in
an error message.

Settings consulted (unprefixed, see ``Settings``): LOG_LEVEL, LOG_TO_FILE,
LOG_FILE_DIR. With LOG_TO_FILE enabled, a ``migrationhub-<date>.log`` file
rotates at midnight and keeps 30 days.

Event names are dotted, ``<component>.<subject>.<verb>``:

    >>> logger = get_logger(__name__)
    >>> logger.info("executor.batch.committed", entity="offices", inserted=3)
"""

import logging
import re
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from structlog.types import EventDict, Processor

from migration_hub.config import get_settings

REDACTED_VALUE = "[REDACTED]"

_SENSITIVE_KEY = re.compile(
    r"(password|passwd|token|secret|api_key|database_uri$|^dsn$)", re.IGNORECASE
)
# user:password@ inside a connection URL
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.\-]*://)(?P<user>[^:/@\s]+):[^@\s]+@")


def _mask_url_credentials(text: str) -> str:
    return _URL_CREDENTIALS.sub(rf"\g<scheme>\g<user>:{REDACTED_VALUE}@", text)


def sanitize_for_logging(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with secrets removed.

    Values under sensitive keys are replaced outright; passwords inside any
    other string value that looks like a connection URL are masked.

    Example:
        >>> sanitize_for_logging({"password": "pw", "error": "postgresql://mh:pw@db/x down"})
        {'password': '[REDACTED]', 'error': 'postgresql://mh:[REDACTED]@db/x down'}
    """
    clean: Dict[str, Any] = {}
    for key, value in data.items():
        if _SENSITIVE_KEY.search(str(key)):
            clean[key] = REDACTED_VALUE
        elif isinstance(value, dict):
            clean[key] = sanitize_for_logging(value)
        elif isinstance(value, str) and "://" in value:
            clean[key] = _mask_url_credentials(value)
        else:
            clean[key] = value
    return clean


def _sanitize(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    return sanitize_for_logging(dict(event_dict))


def _handlers(level: int, to_file: bool, file_dir: str) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        directory = Path(file_dir)
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                filename=str(directory / f"migrationhub-{datetime.now():%Y%m%d}.log"),
                when="midnight",
                backupCount=30,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging() -> None:
    """Install the stdlib handlers and the structlog processor chain."""
    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in _handlers(level, settings.LOG_TO_FILE, settings.LOG_FILE_DIR):
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _sanitize,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(default=str),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


class MigrationAuditLogger:
    """
    Emits one audit event per target write or conflict decision.

    Together the events reconstruct what a run changed: which legacy
    record became which new id, and how each conflict was settled.
    """

    def __init__(self, actor: str = "batch_executor"):
        self.logger = structlog.get_logger("migration_hub.audit")
        self.actor = actor

    def _emit(self, event: str, entity: str, legacy_id: int, run_id: Optional[str], **fields) -> None:
        self.logger.info(
            event,
            entity=entity,
            legacy_id=legacy_id,
            run_id=run_id,
            actor=self.actor,
            recorded_at=datetime.now(timezone.utc).isoformat(),
            **fields,
        )

    def log_insert(self, entity: str, legacy_id: int, new_id: str, run_id: Optional[str] = None) -> None:
        self._emit("migration.record.changed", entity, legacy_id, run_id, operation="insert", new_id=new_id)

    def log_update(self, entity: str, legacy_id: int, new_id: str, run_id: Optional[str] = None) -> None:
        self._emit("migration.record.changed", entity, legacy_id, run_id, operation="update", new_id=new_id)

    def log_conflict(
        self,
        entity: str,
        legacy_id: int,
        strategy: str,
        outcome: str,
        changed_fields: List[str],
        run_id: Optional[str] = None,
    ) -> None:
        self._emit(
            "migration.conflict.recorded",
            entity,
            legacy_id,
            run_id,
            strategy=strategy,
            outcome=outcome,
            changed_fields=changed_fields,
        )
