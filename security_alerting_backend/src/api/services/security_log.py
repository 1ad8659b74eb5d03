from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.api.schemas.common import utc_now

logger = logging.getLogger(__name__)


def _parse_ts(v: Any) -> Optional[datetime]:
    if not isinstance(v, str):
        return None
    try:
        ts = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class SecurityLogWriter:
    """
    Appends one JSON object per line to the security log file.

    Line shape: ``{timestamp, event, ...fields, severity}``. Write failures fall back
    to the application logger and are never raised to the caller.
    """

    def __init__(self, path: str | Path, echo: bool = False):
        self.path = Path(path)
        self._echo = echo
        self._lock = threading.Lock()
        self._dir_ready = False

    def _ensure_dir(self) -> None:
        if not self._dir_ready:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._dir_ready = True

    # PUBLIC_INTERFACE
    def write(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append ``entry`` with a timestamp; returns the record that was (or would have been) written."""
        record: Dict[str, Any] = {"timestamp": utc_now().isoformat()}
        record.update(entry)
        try:
            line = json.dumps(record, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            logger.exception("Security log entry is not serializable event=%s", entry.get("event"))
            return record

        try:
            with self._lock:
                self._ensure_dir()
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except OSError:
            logger.exception("Failed writing security log at %s; entry follows", str(self.path))
            logger.warning("[SECURITY LOG] %s", line)
            return record

        if self._echo:
            logger.info("[SECURITY LOG] %s", line)
        return record

    # PUBLIC_INTERFACE
    def read_entries(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Parse the log file, skipping corrupt lines; optionally keep entries newer than ``since``."""
        try:
            with self._lock:
                if not self.path.exists():
                    return []
                raw = self.path.read_text(encoding="utf-8")
        except OSError:
            logger.exception("Failed reading security log at %s", str(self.path))
            return []

        entries: List[Dict[str, Any]] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                doc = json.loads(line)
            except ValueError:
                continue
            if not isinstance(doc, dict):
                continue
            if since is not None:
                ts = _parse_ts(doc.get("timestamp"))
                if ts is None or ts <= since:
                    continue
            entries.append(doc)
        return entries

    # PUBLIC_INTERFACE
    def clean_old_entries(self, days: int = 30) -> int:
        """Rewrite the log keeping only entries from the last ``days`` days; returns lines kept."""
        cutoff = utc_now() - timedelta(days=max(1, int(days)))
        try:
            with self._lock:
                if not self.path.exists():
                    return 0
                lines = [ln for ln in self.path.read_text(encoding="utf-8").splitlines() if ln.strip()]
                kept = []
                for ln in lines:
                    try:
                        ts = _parse_ts(json.loads(ln).get("timestamp"))
                    except (ValueError, AttributeError):
                        continue
                    if ts is not None and ts > cutoff:
                        kept.append(ln)
                self.path.write_text("".join(k + "\n" for k in kept), encoding="utf-8")
        except OSError:
            logger.exception("Failed cleaning security log at %s", str(self.path))
            return 0

        logger.info("Security log cleaned kept=%s of=%s", len(kept), len(lines))
        return len(kept)
