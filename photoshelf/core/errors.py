"""Error taxonomy for ingest runs.

Structural errors abort a run before anything durable changes. Item errors are
confined to a single source file: the file is reported and left out of the
catalog while the run carries on.
"""

from __future__ import annotations


class PhotoshelfError(Exception):
    """Base exception for all photoshelf errors."""


class StructuralError(PhotoshelfError):
    """Aborts the whole run with a non-zero exit status."""


class ConfigurationError(StructuralError):
    """Required configuration (store endpoint, credentials) is missing or invalid."""


class SourceRootError(StructuralError):
    """The source tree cannot be walked."""


class PublishError(StructuralError):
    """Writing the catalog snapshot failed."""


class ItemError(PhotoshelfError):
    """Processing a single source file failed."""

    stage = "process"


class HashingError(ItemError):
    stage = "hash"


class ProbeError(ItemError):
    stage = "probe"


class DerivativeError(ItemError):
    stage = "derive"


class UploadError(ItemError):
    stage = "upload"


class DuplicateOfFailedError(ItemError):
    """Raised for a duplicate whose first occurrence failed to process."""

    stage = "reference"


__all__ = [
    "PhotoshelfError",
    "StructuralError",
    "ConfigurationError",
    "SourceRootError",
    "PublishError",
    "ItemError",
    "HashingError",
    "ProbeError",
    "DerivativeError",
    "UploadError",
    "DuplicateOfFailedError",
]
