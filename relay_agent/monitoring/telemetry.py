from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, IO, Optional

logger = logging.getLogger(__name__)


class TelemetryLogger:
    """Appends events as JSON lines to a file, or to an already-open stream."""

    def __init__(self, path: Optional[str] = None, *, stream: Optional[IO[str]] = None) -> None:
        self.path = path or os.environ.get("RELAY_AGENT_TELEMETRY_PATH")
        self._fh: Optional[IO[str]] = None
        self._owns_fh = False
        if stream is not None:
            self._fh = stream
        elif self.path:
            p = Path(self.path)
            p.parent.mkdir(parents=True, exist_ok=True)
            # append mode JSONL
            self._fh = p.open("a", encoding="utf-8")
            self._owns_fh = True

    @property
    def enabled(self) -> bool:
        return self._fh is not None

    def log(self, payload: Dict[str, Any]) -> None:
        if not self._fh:
            return
        try:
            self._fh.write(json.dumps(payload, separators=(",", ":"), default=str) + "\n")
            self._fh.flush()
        except (OSError, ValueError, TypeError):
            logger.debug("telemetry write failed", exc_info=True)

    def close(self) -> None:
        if not self._fh or not self._owns_fh:
            return
        try:
            self._fh.close()
        except OSError:
            pass
        self._fh = None
