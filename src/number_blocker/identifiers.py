"""
Identifier input handling.

Batch files are plain text with one phone number per line. Identifiers are
opaque: they are trimmed and blank lines are dropped, nothing else.
"""

from pathlib import Path
from typing import Iterator, Sequence, TypeVar, Union

from .exceptions import BatchFileError, ValidationError

T = TypeVar("T")


def normalize_identifier(raw: str) -> str:
    """
    Trim an identifier.

    Raises:
        ValidationError: If nothing is left after trimming
    """
    identifier = (raw or "").strip()
    if not identifier:
        raise ValidationError(
            code="empty_identifier",
            message="Identifier is empty",
            details={"raw": raw},
        )
    return identifier


def read_identifiers(path: Union[str, Path]) -> list[str]:
    """
    Read every non-empty, trimmed line of a batch file, order preserved.

    Raises:
        BatchFileError: If the file cannot be read
    """
    file_path = Path(path)
    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise BatchFileError(
            code="io_error",
            message=f"Failed to read batch file {file_path}: {e}",
            details={"file_path": str(file_path)},
        ) from e
    except UnicodeDecodeError as e:
        raise BatchFileError(
            code="decode_error",
            message=f"Batch file {file_path} is not valid UTF-8",
            details={"file_path": str(file_path)},
        ) from e

    return [normalize_identifier(line) for line in content.splitlines() if line.strip()]


def chunk(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive groups of at most `size` items."""
    if size < 1:
        raise ValidationError(
            code="invalid_batch_size",
            message=f"Batch size must be >= 1, got {size}",
        )
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
