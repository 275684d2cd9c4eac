"""Media ingest building blocks: hashing, naming, probing, derivatives, catalog schema."""

CATALOG_SCHEMA_VERSION = "1.0.0"
