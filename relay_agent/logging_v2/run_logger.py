from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import LoggingConfig

logger = logging.getLogger(__name__)

SECRET_KEYS = {
    "api_key",
    "apikey",
    "authorization",
    "x-api-key",
    "openai_api_key",
    "openrouter_api_key",
    "anthropic_api_key",
    "kilo_api_key",
    "access_token",
    "refresh_token",
}


class RunLogger:
    """Per-session run directory: metadata, steps, error snapshots and events.

    Usage:
      rl = RunLogger(config.logging)
      run_dir = rl.start_run(session_id)
      rl.write_meta({ ... })
      rl.write_step(1, step.to_dict())
    """

    def __init__(self, config: Optional[LoggingConfig] = None) -> None:
        self.config = config or LoggingConfig()
        self.enabled = bool(self.config.enabled)
        self.root_dir = Path(self.config.root_dir or "logging").resolve()
        self.redact_enabled = bool(self.config.redact)
        self.retention_max_runs = int(self.config.retention_max_runs or 0)
        self.run_dir: Optional[Path] = None

    def _now_ts(self) -> str:
        return _dt.datetime.now(_dt.timezone.utc).strftime("%Y%m%d-%H%M%S")

    def _redact(self, data: Any) -> Any:
        if not self.redact_enabled:
            return data

        def _rec(obj: Any) -> Any:
            if isinstance(obj, dict):
                return {
                    k: ("***REDACTED***" if str(k).lower() in SECRET_KEYS else _rec(v))
                    for k, v in obj.items()
                }
            if isinstance(obj, list):
                return [_rec(x) for x in obj]
            return obj

        return _rec(data)

    def start_run(self, session_id: str) -> str:
        if not self.enabled:
            self.run_dir = None
            return ""
        ts = self._now_ts()
        sid_raw = str(session_id or "session")
        sid_clean = sid_raw.replace(os.sep, "_").replace("/", "_").replace("\\", "_").strip("_.")
        sid = (sid_clean or "session")[:32]
        run_dir = self.root_dir / f"{ts}_{sid}"
        try:
            for sub in ("meta", "steps", "errors"):
                (run_dir / sub).mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.warning("could not create run directory %s", run_dir, exc_info=True)
            self.run_dir = None
            return ""
        self.run_dir = run_dir
        self._apply_retention()
        return str(run_dir)

    def _apply_retention(self) -> None:
        if self.retention_max_runs <= 0 or not self.root_dir.exists():
            return
        try:
            subdirs = [p for p in self.root_dir.iterdir() if p.is_dir()]
            subdirs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        except OSError:
            return
        for old in subdirs[self.retention_max_runs:]:
            if self.run_dir is not None and old == self.run_dir:
                continue
            shutil.rmtree(old, ignore_errors=True)

    def write_json(self, rel_path: str, data: Any) -> str:
        if not self.run_dir:
            return ""
        path = self.run_dir / rel_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self._redact(data), indent=2, default=str), encoding="utf-8")
            return str(path)
        except (OSError, ValueError, TypeError):
            logger.debug("run logger write failed for %s", rel_path, exc_info=True)
            return ""

    def append_jsonl(self, rel_path: str, data: Dict[str, Any]) -> str:
        if not self.run_dir:
            return ""
        path = self.run_dir / rel_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(self._redact(data), separators=(",", ":"), default=str) + "\n")
            return str(path)
        except (OSError, ValueError, TypeError):
            logger.debug("run logger append failed for %s", rel_path, exc_info=True)
            return ""

    def write_meta(self, meta: Dict[str, Any]) -> str:
        return self.write_json("meta/session.json", meta)

    def write_step(self, index: int, step: Dict[str, Any]) -> str:
        return self.write_json(f"steps/step_{index}.json", step)

    def write_error(self, name: str, payload: Dict[str, Any]) -> str:
        return self.write_json(f"errors/{name}.json", payload)

    def log_event(self, event: Dict[str, Any]) -> str:
        return self.append_jsonl("events.jsonl", event)
