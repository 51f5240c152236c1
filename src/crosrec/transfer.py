"""
HTTP transfer layer.

Fetches a URL into a local file, either fresh or resuming from a partial
file with a ``Range`` request. ``file://`` URLs and plain paths are copied
locally so a catalog on disk can be used for debugging.
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter, Retry

logger = logging.getLogger(__name__)

USER_AGENT = "crosrec/0.9.2"
CHUNK_SIZE = 128 * 1024
TIMEOUT = 30

ProgressCallback = Callable[[int, int], None]


class FetchError(Exception):
    """A transfer did not complete. Any partial file is left in place."""


def make_session() -> requests.Session:
    s = requests.Session()
    retries = Retry(
        total=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET", "HEAD"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update({"User-Agent": USER_AGENT})
    return s


def _local_source(url: str) -> Optional[Path]:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(parsed.path)
    if not parsed.scheme:
        return Path(url)
    return None


def fetch_url(
    url: str,
    dest: Path,
    resume: bool = False,
    session: Optional[requests.Session] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> Path:
    """
    Download ``url`` to ``dest``.

    Args:
        url: http(s) or file URL, or a local path
        dest: Local file to write
        resume: Continue from the current length of ``dest`` if it exists;
            otherwise any existing file is replaced
        session: requests session (a retrying one is created if omitted)
        progress_cb: Optional progress callback(bytes_done, total)

    Returns:
        ``dest``

    Raises:
        FetchError: If the transfer fails
    """
    dest = Path(dest)
    logger.debug("fetch url=(%s) filename=(%s) resume=(%s)", url, dest, resume)

    local = _local_source(url)
    if local is not None:
        try:
            shutil.copyfile(local, dest)
        except OSError as exc:
            raise FetchError(f"Cannot read {local}: {exc}") from exc
        return dest

    try:
        offset = dest.stat().st_size if resume and dest.exists() else 0
        if not resume and dest.exists():
            dest.unlink()
    except OSError as exc:
        raise FetchError(f"Cannot prepare {dest}: {exc}") from exc

    if session is not None:
        _stream(session, url, dest, offset, progress_cb)
    else:
        with make_session() as own:
            _stream(own, url, dest, offset, progress_cb)
    return dest


def _stream(
    session: requests.Session,
    url: str,
    dest: Path,
    offset: int,
    progress_cb: Optional[ProgressCallback],
) -> None:
    headers = {"Range": f"bytes={offset}-"} if offset > 0 else {}
    try:
        with session.get(url, stream=True, headers=headers, timeout=TIMEOUT) as r:
            if r.status_code == 416 and offset > 0:
                # The file is already complete and the server will not say so.
                logger.warning("Ignoring spurious complaint: %s is already complete", dest.name)
                return
            if r.status_code >= 400:
                raise FetchError(f"HTTP {r.status_code} fetching {url}")

            if r.status_code == 206:
                mode = "ab"
                done = offset
            else:
                # Server ignored the Range header: start over.
                mode = "wb"
                done = 0
            total = done + int(r.headers.get("Content-Length", "0") or 0)

            with open(dest, mode) as f:
                for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    done += len(chunk)
                    if progress_cb:
                        progress_cb(done, total)
    except requests.RequestException as exc:
        raise FetchError(f"Transfer of {url} failed: {exc}") from exc
    except OSError as exc:
        raise FetchError(f"Unable to write {dest}: {exc}") from exc
