"""
transfer.py
------------
Validation of inbound file transfers (size cap + extension allow-list).
"""

from typing import Iterable

FILE_TOO_LARGE = "FILE_TOO_LARGE"
FILE_TYPE_NOT_ALLOWED = "FILE_TYPE_NOT_ALLOWED"
BAD_FILE_DATA = "BAD_FILE_DATA"


class ValidationError(Exception):
    """
    An upload was rejected before anything was stored.

    `code` is the machine-readable ERROR code, `reason` the short rejection
    reason and `message` the text shown to the sender.
    """

    def __init__(self, code: str, reason: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason
        self.message = message


def file_extension(file_name: str) -> str:
    """Lowercased text after the last '.'; the whole name when there is none."""
    return file_name.rsplit(".", 1)[-1].lower()


def format_size(n: int) -> str:
    if n >= 1024 * 1024 and n % (1024 * 1024) == 0:
        return f"{n // (1024 * 1024)} MB"
    if n >= 1024 and n % 1024 == 0:
        return f"{n // 1024} KB"
    return f"{n} bytes"


def validate_transfer(size_bytes: int, file_name: str, max_file_size: int,
                      allowed_types: Iterable[str]) -> None:
    """
    Accept or reject an upload. Returns None when accepted.

    Raises:
        ValidationError: reason "too large" when size_bytes exceeds
            max_file_size, or "type not allowed" when the extension is not
            in a non-empty allow-list.
    """
    if size_bytes > max_file_size:
        raise ValidationError(
            FILE_TOO_LARGE, "too large",
            f"File too large (max: {format_size(max_file_size)})",
        )

    allowed = set(allowed_types)
    if allowed and file_extension(file_name) not in allowed:
        raise ValidationError(FILE_TYPE_NOT_ALLOWED, "type not allowed", "File type not allowed")
