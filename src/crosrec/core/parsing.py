"""
Centralized parsing helpers for catalog lines, byte sizes and prompt answers.

The catalog parser, the selectors and the download pipeline import these
helpers rather than re-implement them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

MB = 1024 * 1024


def split_key_value(line: str) -> Optional[Tuple[str, str]]:
    """
    Tokenize a single ``key=value`` catalog line.

    Accepts exactly one ``=`` with a non-empty key and a non-empty value.
    Everything else (no ``=``, several ``=``, an empty side) is rejected.

    Returns:
        ``(key, value)`` or None when the line must be ignored.
    """
    if line.count("=") != 1:
        return None
    key, value = line.split("=", 1)
    if not key or not value:
        return None
    return key, value


def roundup_mb(num_bytes: int) -> int:
    """
    Convert bytes to MB, rounding up to the storage needed to hold them.

    ``k * MB`` gives ``k``; ``k * MB + 1`` gives ``k + 1``.
    """
    if num_bytes < 0:
        raise ValueError(f"Byte count cannot be negative: {num_bytes}")
    return -(-num_bytes // MB)


class AnswerKind(Enum):
    """Classification of a line typed at a selection prompt."""
    RESHOW = "reshow"
    MORE = "more"
    UNKNOWN = "unknown"
    NUMBER = "number"


@dataclass(frozen=True)
class Answer:
    kind: AnswerKind
    number: int = 0


def parse_choice(raw: Optional[str]) -> Answer:
    """
    Classify a prompt answer.

    - empty or ``?``: redisplay the current page
    - ``m``: show the next page
    - only digits: a choice number (``0`` means quit)
    - anything else: not understood
    """
    value = (raw or "").strip()
    if not value or value == "?":
        return Answer(AnswerKind.RESHOW)
    if value == "m":
        return Answer(AnswerKind.MORE)
    if value.isdigit() and value.isascii():
        return Answer(AnswerKind.NUMBER, int(value))
    return Answer(AnswerKind.UNKNOWN)
