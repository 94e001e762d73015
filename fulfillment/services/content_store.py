"""
Content Store - maps a product file_key to a file under CONTENT_ROOT.

Only the basename of the key is honoured, and the resolved path must stay
inside the root.
"""

import re
from pathlib import Path

from fulfillment.config import settings
from fulfillment.exceptions import ContentUnavailableError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str) -> str:
    """Strip directories and anything outside [A-Za-z0-9._-]."""
    base = Path(name.replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS.sub("_", base).lstrip(".")
    return cleaned


class ContentStore:
    """Local-disk content store."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or settings.content_root).resolve()

    def resolve(self, file_key: str | None) -> Path:
        """
        Absolute path of a product file.

        Raises:
            ContentUnavailableError: no key, unsafe key, or file missing
        """
        if not file_key:
            raise ContentUnavailableError("No file available for this product")

        safe_name = sanitize_filename(file_key)
        if not safe_name:
            raise ContentUnavailableError("Invalid file name")

        path = (self.root / safe_name).resolve()
        if not path.is_relative_to(self.root):
            raise ContentUnavailableError("Invalid file path")
        if not path.is_file():
            raise ContentUnavailableError("File not found")
        return path
