"""
goal: error taxonomy shared by the record reader, the tree builder and the clustering driver.
corpus scans catch these per record and keep going; explicit single-record operations let them
propagate to the caller (CLI exit code 1, API 404/422).
"""

from __future__ import annotations


class ProcKinError(Exception):
    """base class for every error raised by the engine"""


class CorruptedDataError(ProcKinError):
    """record is structurally unusable (for example no "Main process" entry)"""


class NotFoundError(ProcKinError):
    """a referenced sample id is not part of the corpus"""


class UnreadableError(ProcKinError):
    """record could not be read or decoded from storage"""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot read {path}: {reason}")
        self.path = path
        self.reason = reason
