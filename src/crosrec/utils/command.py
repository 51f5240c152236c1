"""Thin subprocess wrapper with consistent logging."""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Sequence

from crosrec.core.messages import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: List[str]
    returncode: int
    stdout: str
    stderr: str


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
) -> CmdResult:
    """
    Run an external program and capture its output.

    Raises:
        CommandError: If check is set and the program exits non-zero
    """
    argv_list = [str(a) for a in argv]
    logger.debug("CMD %s", " ".join(shlex.quote(a) for a in argv_list))

    try:
        p = subprocess.run(
            argv_list,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError:
        raise CommandError(argv_list, 127, f"{argv_list[0]}: not found")

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    if check and p.returncode != 0:
        raise CommandError(argv_list, p.returncode, p.stderr)

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
