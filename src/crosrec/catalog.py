"""
Recovery image catalog.

The catalog is a UTF-8 text file of ``key=value`` lines. Paragraphs separated
by blank lines describe one image each (a stanza); lines starting with ``#``
are comments; lines starting with ``recovery_tool`` form a header that
declares which tool version the catalog was written for.

Usage:
    header, stanza_text = split_catalog(raw_text)
    check_version(header.declared_version, TOOL_VERSION, header.update_hint)
    catalog = parse_catalog(stanza_text, "sha1")
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from crosrec.core.messages import CatalogError, VersionMismatchError
from crosrec.core.parsing import split_key_value
from crosrec.transfer import FetchError, fetch_url

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: Tuple[str, ...] = ("name", "file", "zipfilesize", "filesize", "url")
CHECKSUM_FIELDS: Tuple[str, ...] = ("md5", "sha1")
SINGLE_VALUED = REQUIRED_FIELDS + CHECKSUM_FIELDS
SIZE_FIELDS: Tuple[str, ...] = ("zipfilesize", "filesize")

HEADER_PREFIX = "recovery_tool"
DEFAULT_UPDATE_HINT = "Please download a matching version of the tool and try again."

# Files written into the working directory while loading a catalog.
RAW_CATALOG_FILE = "tmp.txt"
STANZA_FILE = "config.txt"
HEADER_FILE = "version.txt"


@dataclass(frozen=True)
class ImageStanza:
    """
    One selectable image from the catalog.

    Attributes:
        index: 1-based position in the catalog (the number shown to the user)
        name: Human-readable description, also matched against MODEL
        file: Name of the image file inside the downloaded container
        zip_file_size: Exact size of the downloaded container in bytes
        file_size: Exact size of the unpacked image in bytes
        url: Where to download the container from
        md5: Optional hex digest of the container
        sha1: Optional hex digest of the container
        problems: Reasons the stanza is not well-formed (empty when valid)
    """
    index: int
    name: str = ""
    file: str = ""
    zip_file_size: Optional[int] = None
    file_size: Optional[int] = None
    url: str = ""
    md5: Optional[str] = None
    sha1: Optional[str] = None
    problems: Tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.problems

    @property
    def zip_name(self) -> str:
        """Local filename of the container: the final path segment of the URL."""
        return self.url.rstrip("/").rsplit("/", 1)[-1] if self.url else ""

    def digest_for(self, kind: str) -> Optional[str]:
        """Return the catalog digest for the given checksum kind."""
        if kind not in CHECKSUM_FIELDS:
            raise ValueError(f"Unknown checksum kind: {kind}")
        return getattr(self, kind)


@dataclass
class Catalog:
    """
    Parsed catalog.

    ``count`` includes malformed stanzas; ``valid`` is False when any stanza
    is malformed or when no stanza was found at all.
    """
    records: List[ImageStanza]
    valid: bool
    count: int

    def __len__(self) -> int:
        return self.count

    def get(self, index: int) -> ImageStanza:
        """Return the stanza with the given 1-based index."""
        if index < 1 or index > self.count:
            raise IndexError(f"Image {index} is not in the catalog (1-{self.count})")
        return self.records[index - 1]


def _close_stanza(index: int, values: Dict[str, str], problems: List[str],
                  checksum_kind: str) -> ImageStanza:
    for key in REQUIRED_FIELDS:
        if key not in values:
            logger.debug("image %d is missing %s", index, key)
            problems.append(f"missing {key}")
    if checksum_kind not in values:
        logger.debug("image %d is missing required %s", index, checksum_kind)
        problems.append(f"missing required {checksum_kind}")

    sizes: Dict[str, Optional[int]] = {}
    for key in SIZE_FIELDS:
        raw = values.get(key)
        if raw is None:
            sizes[key] = None
        elif raw.isascii() and raw.isdigit():
            sizes[key] = int(raw)
        else:
            logger.debug("image %d has non-numeric %s=%s", index, key, raw)
            problems.append(f"{key} is not a number")
            sizes[key] = None

    return ImageStanza(
        index=index,
        name=values.get("name", ""),
        file=values.get("file", ""),
        zip_file_size=sizes["zipfilesize"],
        file_size=sizes["filesize"],
        url=values.get("url", ""),
        md5=values.get("md5"),
        sha1=values.get("sha1"),
        problems=tuple(problems),
    )


def parse_catalog(text: str, checksum_kind: str) -> Catalog:
    """
    Parse stanza text into ordered image records.

    Malformed lines are ignored. A malformed stanza (missing or duplicated
    field, missing digest for ``checksum_kind``) is kept in the result so
    that numbering stays stable, but it makes the whole catalog invalid.
    """
    if checksum_kind not in CHECKSUM_FIELDS:
        raise ValueError(f"Unknown checksum kind: {checksum_kind}")

    records: List[ImageStanza] = []
    values: Dict[str, str] = {}
    problems: List[str] = []
    in_stanza = False

    # The extra blank line closes the final stanza.
    for line in text.splitlines() + [""]:
        line = line.strip()

        if not line:
            if not in_stanza:
                continue
            records.append(_close_stanza(len(records) + 1, values, problems, checksum_kind))
            values, problems = {}, []
            in_stanza = False
            continue

        token = split_key_value(line)
        if token is None:
            logger.debug("ignoring %s", line)
            continue

        in_stanza = True
        key, value = token
        if key in SINGLE_VALUED:
            if key in values:
                logger.debug("duplicate %s", key)
                problems.append(f"duplicate {key}")
            values[key] = value
        else:
            logger.debug("image %d: ignoring %s=%s", len(records) + 1, key, value)

    count = len(records)
    valid = count > 0 and all(r.valid for r in records)
    logger.debug("%d images found (valid=%s)", count, valid)
    return Catalog(records=records, valid=valid, count=count)


@dataclass(frozen=True)
class CatalogHeader:
    """Out-of-band ``recovery_tool*`` lines from the top of the catalog."""
    tool_version: Optional[str] = None
    linux_version: Optional[str] = None
    update_hint: Optional[str] = None
    lines: Tuple[str, ...] = ()

    @property
    def declared_version(self) -> Optional[str]:
        """The Linux-specific version wins over the generic one."""
        if self.linux_version is not None:
            return self.linux_version
        return self.tool_version


def _header_value(lines: List[str], key: str) -> Optional[str]:
    prefix = f"{key}="
    for line in lines:
        if line.startswith(prefix):
            return line.split("=", 1)[1]
    return None


def split_catalog(raw: str) -> Tuple[CatalogHeader, str]:
    """
    Separate the version header from the image stanzas.

    Returns:
        Tuple of (header, stanza_text). Comment and header lines are removed
        from stanza_text, which ends with one blank line.
    """
    lines = raw.splitlines()
    header_lines = [line for line in lines if line.startswith(HEADER_PREFIX)]
    body_lines = [
        line for line in lines
        if not line.startswith("#") and not line.startswith(HEADER_PREFIX)
    ]
    header = CatalogHeader(
        tool_version=_header_value(header_lines, "recovery_tool_version"),
        linux_version=_header_value(header_lines, "recovery_tool_linux_version"),
        update_hint=_header_value(header_lines, "recovery_tool_update"),
        lines=tuple(header_lines),
    )
    return header, "\n".join(body_lines) + "\n\n"


def check_version(declared: Optional[str], build_version: str,
                  remediation: Optional[str] = None) -> None:
    """
    Require the catalog to be written for exactly this tool version.

    Raises:
        CatalogError: If the catalog declares no version at all
        VersionMismatchError: If the declared version differs
    """
    if declared is None:
        raise CatalogError("The config file doesn't contain a version string.")
    if declared != build_version:
        raise VersionMismatchError(
            f"This tool is version {build_version}. "
            f"The config file is for version {declared}.\n"
            f"{remediation or DEFAULT_UPDATE_HINT}"
        )


def load_catalog(url: str, workdir: Path, session=None) -> Tuple[CatalogHeader, str]:
    """
    Fetch the catalog into the working directory and split it.

    Writes the raw download, the header lines and the stanza text to
    RAW_CATALOG_FILE, HEADER_FILE and STANZA_FILE respectively.

    Raises:
        CatalogError: If the catalog cannot be downloaded
    """
    raw_path = workdir / RAW_CATALOG_FILE
    logger.info("Downloading config file from %s", url)
    try:
        fetch_url(url, raw_path, resume=False, session=session)
    except FetchError as exc:
        raise CatalogError(f"Unable to download the config file: {exc}") from exc

    try:
        raw = raw_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CatalogError(f"The config file isn't valid: it is not UTF-8 text ({exc.reason}).") from exc
    header, stanza_text = split_catalog(raw)
    (workdir / HEADER_FILE).write_text(
        "".join(f"{line}\n" for line in header.lines), encoding="utf-8"
    )
    (workdir / STANZA_FILE).write_text(stanza_text, encoding="utf-8")
    return header, stanza_text
