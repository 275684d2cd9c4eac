"""Content-addressed ingest of a photo and video tree into object storage."""

__version__ = "0.1.0"
