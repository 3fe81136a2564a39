import json
import os
from pathlib import Path
from typing import Any, Optional

from .errors import PersistError


CONFIG_FILE = "bot_config.json"
STATS_FILE = "bot_stats.json"


class Storage:
    """Data directory holding the two persisted JSON documents."""

    def __init__(self, base: Path = Path(".data")):
        self.base = Path(base)

    @classmethod
    def from_env(cls) -> "Storage":
        return cls(base=Path(os.getenv("ZAPBOT_DATA_DIR", ".data")))

    def ensure_layout(self):
        self.base.mkdir(parents=True, exist_ok=True)

    @property
    def config_path(self) -> Path:
        return self.base / CONFIG_FILE

    @property
    def stats_path(self) -> Path:
        return self.base / STATS_FILE

    def read_json(self, path: Path) -> Optional[Any]:
        """
        Return the parsed document, or None when the file does not exist yet.
        Unreadable or malformed files raise (OSError / ValueError) for the caller to map.
        """
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write_json(self, path: Path, data: Any) -> None:
        """
        Write to a .tmp sibling and rename over the target so a crash mid-write
        never leaves a truncated document behind.
        """
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(str(tmp), str(path))
        except (OSError, TypeError, ValueError) as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise PersistError(f"could not write {path.name}: {e}") from e
