import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, Optional

log = logging.getLogger(__name__)


class DownloadTimestamps:
    """
    Persistent map of chain id to the ISO-8601 UTC time of its last completed download.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._timestamps: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.error(f"Failed to read download timestamps from '{self.path}': {e}")
            return {}
        if not isinstance(data, dict):
            log.warning(f"Ignoring malformed download timestamps file '{self.path}'")
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _save(self) -> None:
        """Atomically rewrites the file through a temporary sibling."""
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(self._timestamps, indent=2), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as e:
            log.error(f"Failed to write download timestamps to '{self.path}': {e}", exc_info=True)
        finally:
            temp_path.unlink(missing_ok=True)

    def get(self, chain_id: str) -> Optional[str]:
        return self._timestamps.get(chain_id)

    def get_all(self) -> Dict[str, str]:
        return dict(self._timestamps)

    def set(self, chain_id: str, when: Optional[datetime] = None) -> str:
        """Records a completed download, defaulting to now. Returns the stored timestamp."""
        stamp = (when or datetime.now(timezone.utc)).astimezone(timezone.utc).isoformat()
        self._timestamps[chain_id] = stamp
        self._save()
        return stamp

    def remove(self, chain_id: str) -> None:
        if self._timestamps.pop(chain_id, None) is not None:
            self._save()
