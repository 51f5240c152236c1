"""
Run configuration.

Settings is assembled once by the CLI from its options (each of which can
also come from an environment variable) and passed down unchanged.
"""

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from crosrec.state import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

# Must equal the catalog's recovery_tool_version (or recovery_tool_linux_version).
TOOL_VERSION = "0.9.2"

DEFAULT_WORKDIR = "/home/chronos/user/tmp.crosrec"
DEFAULT_CONFIG_URL = "https://raw.githubusercontent.com/craigbeat/BringChromeHome/master/recovery.conf"
DEBUG_LOG = "debug.log"


@dataclass(frozen=True)
class Settings:
    """
    Attributes:
        workdir: Persistent working directory; None or empty for a temporary one
        config_url: Catalog location
        model: Hardware class; when set, the image is chosen automatically
        device: Reserved for pinning the destination device (not used yet)
        state_dir: Where the cross-run records are kept
        checksum: Force "sha1" or "md5"
        unpack: Force "zip" or "gzip"
    """
    workdir: Optional[str] = DEFAULT_WORKDIR
    config_url: str = DEFAULT_CONFIG_URL
    model: Optional[str] = None
    device: Optional[str] = None
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    checksum: Optional[str] = None
    unpack: Optional[str] = None


@contextmanager
def working_directory(requested: Optional[str]) -> Iterator[Path]:
    """
    Yield the directory to work in.

    A persistent directory lets interrupted downloads resume on the next
    run. If it is not requested or cannot be created, a temporary directory
    is used and removed afterwards.
    """
    path: Optional[Path] = None
    if requested:
        try:
            Path(requested).mkdir(exist_ok=True)
            path = Path(requested)
        except OSError as exc:
            logger.warning("Using temporary directory (%s)", exc)

    if path is not None:
        yield path
        return

    with tempfile.TemporaryDirectory(prefix="crosrec.") as tmp:
        yield Path(tmp)


@contextmanager
def debug_log(workdir: Path) -> Iterator[Path]:
    """Record DEBUG messages to a fresh ``debug.log`` in ``workdir`` for the run."""
    log_path = workdir / DEBUG_LOG
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("DEBUG: %(name)s: %(message)s"))

    root = logging.getLogger()
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    try:
        yield log_path
    finally:
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()
