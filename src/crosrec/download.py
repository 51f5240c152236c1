"""
Download, verify and unpack the chosen recovery image.

acquire() runs the whole sequence for one catalog stanza:

1. make sure the working filesystem can hold container and image
2. warn when the same URL was already fetched ("no update available")
3. fetch the container, resuming a partial download
4. check its exact size and its digest
5. unpack the image file and check its exact size

Any failure raises AcquireError; nothing is retried except the resumed
transfer itself.
"""

import gzip
import hashlib
import logging
import shutil
import zipfile
from pathlib import Path
from typing import Callable, Optional

from crosrec.catalog import ImageStanza
from crosrec.core.messages import AcquireError, AcquireFailure, FatalCategory, UserQuit
from crosrec.core.parsing import MB, roundup_mb
from crosrec.core.results import DownloadArtifact
from crosrec.host import HostCapabilities, UnpackMethod
from crosrec.state import StateStore
from crosrec.transfer import FetchError, ProgressCallback, fetch_url

logger = logging.getLogger(__name__)

Ask = Callable[[str], str]
Say = Callable[[str], None]

UPDATE_PROMPT = (
    "No update available. Would you like to change your image number? "
    "'y' (yes, quit), 'n' (no, quit) or 'c' (update anyway)? : "
)


def free_mb(path: Path) -> int:
    """Free space in MB on the filesystem holding ``path``."""
    return shutil.disk_usage(path).free // MB


def verify_free_space(workdir: Path, need_mb: int, free_fn: Callable[[Path], int] = free_mb) -> int:
    """
    Require ``need_mb`` MB of free space in ``workdir``.

    Returns:
        The measured free space in MB.
    """
    got = free_fn(workdir)
    if need_mb > got:
        raise AcquireError(
            AcquireFailure.INSUFFICIENT_SPACE,
            f"There is not enough free space in {workdir} "
            f"(it has {got}MB, we need {need_mb}MB).\n\n"
            "Please free up some space on that filesystem, or specify a temporary "
            "directory on the commandline like so:\n\n"
            "  WORKDIR=/path/to/some/dir  crosrec",
            category=FatalCategory.NONE,
        )
    return got


def file_digest(path: Path, kind: str) -> str:
    h = hashlib.new(kind)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def check_repeat_url(url: str, store: StateStore, ask: Ask, say: Say) -> None:
    """
    Detect a download of the URL fetched last time.

    A new URL is recorded. For a repeated one the user may quit, reset the
    saved choice and quit, or download anyway.

    Raises:
        UserQuit: With exit code 0 when the user chooses to stop
    """
    if url != store.last_url():
        store.save_last_url(url)
        return

    while True:
        reply = ask(UPDATE_PROMPT).strip()
        if reply == "n":
            raise UserQuit(exit_code=0)
        if reply == "y":
            store.clear_has_run()
            say("Please run this tool again, and you will be able to choose your image number.")
            raise UserQuit(exit_code=0)
        if reply == "c":
            say("Updating...")
            return


def _unpack_failed(detail: str) -> AcquireError:
    return AcquireError(
        AcquireFailure.UNPACK_FAILED,
        f"Unable to download a valid recovery image: {detail}",
    )


def unpack(container: Path, member: str, dest_dir: Path, method: UnpackMethod) -> Path:
    """
    Produce ``dest_dir / member`` from the downloaded container.

    ZIP extracts the named member; GZIP decompresses the whole stream into it.
    """
    target = dest_dir / member
    if target.exists():
        target.unlink()

    try:
        if method is UnpackMethod.ZIP:
            with zipfile.ZipFile(container) as zf:
                zf.extract(member, dest_dir)
        else:
            with gzip.open(container, "rb") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst, 1024 * 1024)
    except KeyError:
        raise _unpack_failed(f"{container.name} does not contain {member}")
    except (zipfile.BadZipFile, OSError, EOFError) as exc:
        logger.debug("Can't unpack the zipfile: %s", exc)
        raise _unpack_failed(f"can't unpack {container.name}")
    return target


def acquire(
    stanza: ImageStanza,
    workdir: Path,
    caps: HostCapabilities,
    store: StateStore,
    ask: Ask,
    say: Say,
    session=None,
    progress_cb: Optional[ProgressCallback] = None,
    free_fn: Callable[[Path], int] = free_mb,
) -> DownloadArtifact:
    """
    Fetch and verify the image described by ``stanza``.

    Returns:
        DownloadArtifact for the unpacked image.

    Raises:
        AcquireError: On insufficient space, transfer, size, digest or unpack failure
        UserQuit: If the user stops at the repeated-URL prompt
    """
    workdir = Path(workdir)
    zip_size = stanza.zip_file_size or 0
    file_size = stanza.file_size or 0

    verify_free_space(workdir, roundup_mb(zip_size + file_size), free_fn)

    zip_path = workdir / stanza.zip_name
    check_repeat_url(stanza.url, store, ask, say)

    say(f"Downloading image zipfile from {stanza.url}")
    try:
        fetch_url(stanza.url, zip_path, resume=True, session=session, progress_cb=progress_cb)
    except FetchError as exc:
        logger.debug("couldn't fetch zipfile: %s", exc)
        raise AcquireError(
            AcquireFailure.FETCH_FAILED,
            f"Unable to download a valid recovery image: {exc}",
        ) from exc

    got_size = zip_path.stat().st_size
    if got_size != zip_size:
        logger.debug("zipfilesize is wrong: %d != %d", got_size, zip_size)
        raise AcquireError(
            AcquireFailure.SIZE_MISMATCH,
            f"Unable to download a valid recovery image: {zip_path.name} is "
            f"{got_size} bytes, expected {zip_size}",
        )

    kind = caps.checksum_kind
    expected = (stanza.digest_for(kind) or "").lower()
    actual = file_digest(zip_path, kind)
    logger.debug("checksum is %s", actual)
    if actual != expected:
        logger.debug("wrong %s", kind)
        raise AcquireError(
            AcquireFailure.CHECKSUM_MISMATCH,
            f"Unable to download a valid recovery image: {kind} of {zip_path.name} "
            f"is {actual}, expected {expected}",
        )

    say("Unpacking the zipfile")
    image_path = unpack(zip_path, stanza.file, workdir, caps.unpack_method)

    unpacked_size = image_path.stat().st_size
    if unpacked_size != file_size:
        logger.debug("unpacked filesize is wrong: %d != %d", unpacked_size, file_size)
        raise _unpack_failed(f"{stanza.file} is {unpacked_size} bytes, expected {file_size}")

    return DownloadArtifact(
        path=image_path,
        size=unpacked_size,
        required_mb=roundup_mb(file_size),
    )
