"""Error taxonomy for a generation run."""

from __future__ import annotations

from typing import Optional


class InputError(RuntimeError):
    """Nothing to process: no items were discovered or every item was skipped."""


class GenerationError(RuntimeError):
    """The generator failed for a bucket; the run is aborted."""

    def __init__(self, message: str, *, bucket_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.bucket_index = bucket_index


class ValidationWarning(UserWarning):
    """The sanitized diagram still looks structurally suspect."""


class StorageWarning(UserWarning):
    """A state or checkpoint file could not be read or written."""
