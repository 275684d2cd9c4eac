"""Run-level services built on the ingest helpers."""

from .catalog import CatalogBuilder
from .maintenance import clear_cache, prune
from .pipeline import IngestPipeline, RunSummary, discover
from .publisher import CatalogPublisher
from .uploader import MediaUploader, object_key

__all__ = [
    "CatalogBuilder",
    "CatalogPublisher",
    "IngestPipeline",
    "MediaUploader",
    "RunSummary",
    "clear_cache",
    "discover",
    "object_key",
    "prune",
]
