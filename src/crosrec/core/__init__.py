"""
Core module for crosrec.

This module provides the single source of truth for:
- Error categories and fatal exceptions (messages.py)
- Catalog line, size and prompt-answer parsing (parsing.py)
- Result objects (results.py)

The pipeline modules and the CLI import from here rather than defining
their own variants.
"""

from .parsing import MB, Answer, AnswerKind, parse_choice, roundup_mb, split_key_value
from .results import DownloadArtifact, WriteResult
from .messages import (
    AcquireError,
    AcquireFailure,
    CatalogError,
    CommandError,
    DeviceError,
    FatalCategory,
    RecoveryError,
    UnmountError,
    UserQuit,
    VersionMismatchError,
)

__all__ = [
    # Parsing
    "MB",
    "Answer",
    "AnswerKind",
    "parse_choice",
    "roundup_mb",
    "split_key_value",
    # Results
    "DownloadArtifact",
    "WriteResult",
    # Messages
    "AcquireError",
    "AcquireFailure",
    "CatalogError",
    "CommandError",
    "DeviceError",
    "FatalCategory",
    "RecoveryError",
    "UnmountError",
    "UserQuit",
    "VersionMismatchError",
]
