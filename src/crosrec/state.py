"""
Cross-run state.

Three small plain-text records live in a host directory outside the working
directory:

- ``first_time``: ``1`` once an image has been chosen interactively
- ``default_num``: the 1-based index of that image
- ``update_url``: the last image URL that was fetched

They are read and rewritten without locking; two concurrent runs against
the same directory are not supported.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from crosrec.core.messages import FatalCategory, RecoveryError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "/mnt/stateful_partition/unencrypted"

HAS_RUN_FILE = "first_time"
INDEX_FILE = "default_num"
LAST_URL_FILE = "update_url"


@dataclass(frozen=True)
class SelectionState:
    has_run: bool = False
    saved_index: Optional[int] = None


class StateStore:
    """Reads and writes the cross-run records under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _read(self, name: str) -> Optional[str]:
        path = self.root / name
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise RecoveryError(f"Unable to read {path}: {exc}", FatalCategory.PERMISSION) from exc

    def _write(self, name: str, value: str) -> None:
        path = self.root / name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{value}\n", encoding="utf-8")
        except OSError as exc:
            raise RecoveryError(f"Unable to save {path}: {exc}", FatalCategory.PERMISSION) from exc
        logger.debug("saved %s=%s", name, value)

    def load_selection(self) -> SelectionState:
        has_run = self._read(HAS_RUN_FILE) == "1"
        raw_index = self._read(INDEX_FILE)
        index = int(raw_index) if raw_index and raw_index.isascii() and raw_index.isdigit() else None
        return SelectionState(has_run=has_run, saved_index=index)

    def save_selection(self, index: int) -> SelectionState:
        self._write(INDEX_FILE, str(index))
        self._write(HAS_RUN_FILE, "1")
        return SelectionState(has_run=True, saved_index=index)

    def clear_has_run(self) -> None:
        """Forget that a choice was made, so the next run asks again."""
        self._write(HAS_RUN_FILE, "0")

    def last_url(self) -> Optional[str]:
        return self._read(LAST_URL_FILE) or None

    def save_last_url(self, url: str) -> None:
        self._write(LAST_URL_FILE, url)
