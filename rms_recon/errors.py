"""
Error taxonomy for reconciliation passes.

Every fatal condition raises a ReconError subclass and aborts the whole pass;
nothing is partially emitted. Value mismatches between two reported totals are
not errors: they are collected as ValueMismatchWarning values on the result.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional


class ReconError(Exception):
    """Base class for fatal reconciliation failures."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class HeaderNotFound(ReconError):
    def __init__(self, file_name: str, markers: Iterable[str], scanned_rows: int):
        self.file_name = file_name
        self.markers = tuple(markers)
        self.scanned_rows = scanned_rows
        super().__init__(
            f"{file_name}: no header row containing {' / '.join(self.markers)} "
            f"in the first {scanned_rows} rows; check the file format"
        )


class MissingRequiredColumn(ReconError):
    def __init__(self, file_name: str, column: str):
        self.file_name = file_name
        self.column = column
        super().__init__(f"{file_name}: required column '{column}' not found in header row")


class MissingInputError(ReconError):
    def __init__(self, input_name: str, domain: Optional[str] = None):
        self.input_name = input_name
        self.domain = domain
        where = f" for {domain}" if domain else ""
        super().__init__(f"Missing required input file{where}: {input_name}")


class FilenameMismatch(ReconError):
    def __init__(self, file_name: str, expected: str):
        self.file_name = file_name
        self.expected = expected
        super().__init__(f"File name '{file_name}' does not match expected '{expected}'")


class UnsupportedFileFormat(ReconError):
    def __init__(self, file_name: str, expected: str):
        self.file_name = file_name
        self.expected = expected
        super().__init__(f"{file_name}: unsupported file format, expected {expected}")


class FileReadError(ReconError):
    """The upload could not be decoded at all (corrupt or mislabelled workbook)."""

    def __init__(self, file_name: str, reason: str):
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"{file_name}: could not process file, check format ({reason})")


class InconsistentRemainingData(ReconError):
    """All segment differences are zero yet the remaining sheet still carries amounts."""

    def __init__(self, count: int):
        self.count = count
        super().__init__(
            f"Remaining file lists {count} client(s) with amounts although every segment "
            "difference is zero; re-check the remaining file"
        )


@dataclass(frozen=True)
class ValueMismatchWarning:
    client_key: str
    reported: float
    check: float
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_key": self.client_key,
            "reported": self.reported,
            "check": self.check,
            "message": self.message,
        }
