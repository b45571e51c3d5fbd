"""
Security utilities for the Folder Archiver service.

Archive entries are named after the basename of their source key. Consumers
unpack the resulting ZIP with arbitrary tools, so the names must not be able
to escape the extraction directory or smuggle invisible characters.

The primary focus is preventing:
- Path traversal on extraction (``..`` entries, backslash separators)
- Control and invisible Unicode characters in entry names
- Names that extraction tools refuse or silently rewrite
"""

import unicodedata

from .exceptions import ValidationError

# Module-level constants for improved performance
_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | {0x7F}  # includes DEL

_UNICODE_INVISIBLES: set[int] = {
    # Zero-width characters
    0x200B,  # Zero Width Space
    0x200C,  # Zero Width Non-Joiner
    0x200D,  # Zero Width Joiner
    0xFEFF,  # Zero Width No-Break Space (BOM)

    # Directional override characters
    0x202E,  # Right-to-Left Override
    0x202D,  # Left-to-Right Override
    0x202C,  # Pop Directional Formatting

    # Line/paragraph separators
    0x2028,  # Line Separator
    0x2029,  # Paragraph Separator
}

# Most filesystems cap a single path component at 255 bytes.
MAX_ENTRY_NAME_BYTES = 255


def archive_entry_name(key: str) -> str:
    """
    Derive the ZIP entry name for an S3 key: the text after the last ``/``.

    Args:
        key: The source object key.

    Returns:
        The basename, unchanged, when it is safe to use as an entry name.

    Raises:
        ValidationError: If the basename is empty, a dot segment, too long, or
            contains backslashes, control or invisible characters.

    Examples:
        >>> archive_entry_name("reports/2024/summary.csv")
        'summary.csv'

        >>> archive_entry_name("reports/")  # folder placeholder
        ValidationError: Archive entry name is empty
    """
    if not isinstance(key, str):
        raise ValidationError(
            "S3 key is not a valid string",
            error_code="INVALID_S3_KEY_TYPE",
            context={"key": key, "type": type(key).__name__},
        )

    name = key[key.rfind("/") + 1 :]

    if not name:
        raise ValidationError(
            "Archive entry name is empty",
            error_code="INVALID_ENTRY_NAME",
            context={"key": key},
        )

    if name in {".", ".."}:
        raise ValidationError(
            "Archive entry name is a path traversal segment",
            error_code="UNSAFE_ENTRY_NAME",
            context={"key": key, "name": name},
        )

    # Some unzip tools treat backslashes as separators.
    if "\\" in name:
        raise ValidationError(
            "Archive entry name contains a backslash",
            error_code="UNSAFE_ENTRY_NAME",
            context={"key": key, "name": name},
        )

    if len(name.encode("utf-8")) > MAX_ENTRY_NAME_BYTES:
        raise ValidationError(
            "Archive entry name exceeds byte length limit",
            error_code="INVALID_ENTRY_NAME",
            context={"key": key, "name_length": len(name.encode("utf-8"))},
        )

    for char in name:
        char_code = ord(char)
        if char_code in _INVALID_CONTROL_CHARS:
            raise ValidationError(
                "Archive entry name contains control characters",
                error_code="INVALID_ENTRY_NAME",
                context={"key": key, "char_code": hex(char_code)},
            )
        # Format characters (Cf) are invisible and always problematic
        if char_code in _UNICODE_INVISIBLES or unicodedata.category(char) == "Cf":
            raise ValidationError(
                "Archive entry name contains invisible Unicode characters",
                error_code="INVALID_ENTRY_NAME",
                context={"key": key, "char_code": hex(char_code)},
            )

    return name
