"""JSON-lines mirror of the access record store.

One line per final access record, written to a dedicated rotating file so
compliance tooling can tail it without application noise. The SQLite store
stays the source of truth; this file is a convenience copy.
"""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


class _LockTolerantRotatingFileHandler(RotatingFileHandler):
    """Skips a rollover instead of failing while another process holds the file (Windows)."""

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None
        try:
            super().doRollover()
        except PermissionError:
            pass
        if self.stream is None:
            self.stream = self._open()


class AuditLogger:
    """Writes audit events through the non-propagating ``tenantlock.audit`` logger."""

    LOGGER_NAME = "tenantlock.audit"

    def __init__(
        self,
        log_path: str,
        level: str = "INFO",
        *,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 30,
    ) -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._target = str(self.log_path.resolve())

        self.logger = logging.getLogger(self.LOGGER_NAME)
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        self.logger.propagate = False

        if self._handler() is None:
            handler_cls = _LockTolerantRotatingFileHandler if sys.platform == "win32" else RotatingFileHandler
            handler = handler_cls(
                self._target,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
                delay=True,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)

    def _handler(self) -> Optional[RotatingFileHandler]:
        for handler in self.logger.handlers:
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename == self._target:
                return handler
        return None

    def log_event(self, actor: str, action: str, resource: str, outcome: str, **metadata: Any) -> None:
        """Write one event; ``metadata`` lands under ``meta`` with ``None`` values dropped."""
        event: Dict[str, Any] = {"actor": actor, "action": action, "resource": resource, "outcome": outcome}
        meta = {k: v for k, v in metadata.items() if v is not None}
        if meta:
            event["meta"] = meta
        self.logger.info(json.dumps(event, default=str, sort_keys=True))

    def close(self) -> None:
        handler = self._handler()
        if handler is not None:
            handler.close()
            self.logger.removeHandler(handler)
