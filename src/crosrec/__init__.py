"""
crosrec - Chrome OS recovery image writer

Catalog selection, resumable verified download, and the write to a USB drive.
"""

__version__ = "0.9.2"

from crosrec.catalog import Catalog, ImageStanza, parse_catalog
from crosrec.download import acquire
from crosrec.writer import write_image

__all__ = [
    "Catalog",
    "ImageStanza",
    "parse_catalog",
    "acquire",
    "write_image",
    "__version__",
]
