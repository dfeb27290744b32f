"""Logging setup for applications embedding the PEroxide client.

Library modules only ever call ``logging.getLogger(__name__)``; the host
application decides where records go.  :func:`configure_logging` is the
one-line setup used by the bundled entry points and by interactive sessions.

State transitions of :class:`~peroxide.core.orchestrator.ScanOrchestrator`
are logged as one JSON object per record (see :func:`log_event`) so that
they can be shipped to a log pipeline without re-parsing free text::

    {"event": "scan_transition", "scan_id": "scan-1f0c...", "from": "uploading",
     "to": "awaiting_events", "file_name": "sample.exe"}
"""

from __future__ import annotations

import json
import logging
from typing import Any

from peroxide.config import get_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger.

    Args:
        level: Logging level name.  Defaults to ``Settings.log_level``.
    """
    resolved = level or get_settings().log_level
    logging.basicConfig(level=resolved.upper(), format=_LOG_FORMAT)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit *event* and *fields* as a single structured JSON log entry."""
    if not logger.isEnabledFor(level):
        return
    entry = {"event": event, **fields}
    logger.log(level, json.dumps(entry, default=str))
