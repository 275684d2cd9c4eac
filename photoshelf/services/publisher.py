from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..core.errors import PublishError
from ..core.logging import get_logger
from ..core.storage import Storage
from ..ingest.catalog_schema import RootCatalog

METADATA_PREFIX = "metadata/"
LATEST_KEY = f"{METADATA_PREFIX}latest.json"
JSON_CONTENT_TYPE = "application/json"


@dataclass(slots=True, frozen=True)
class PublishResult:
    version_key: str
    latest_key: str
    latest_url: str
    published_at: datetime


def version_key(published_at: datetime) -> str:
    """Return the immutable snapshot key for a publish time.

    Colons are replaced so the key is safe as a filename on every platform.
    """
    stamp = published_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%fZ")
    return f"{METADATA_PREFIX}{stamp}.json"


class CatalogPublisher:
    def __init__(self, storage: Storage):
        self.storage = storage
        self.logger = get_logger(component="publisher")

    def publish(self, catalog: RootCatalog, *, published_at: Optional[datetime] = None) -> PublishResult:
        """Write a timestamped snapshot, then point ``latest`` at the same bytes.

        The versioned copy must succeed before ``latest`` is touched, so a
        failure leaves the previous ``latest`` intact.
        """
        published_at = published_at or datetime.now(timezone.utc)
        payload = catalog.to_json().encode("utf-8")
        key = version_key(published_at)

        try:
            self.storage.put(key, payload, content_type=JSON_CONTENT_TYPE)
        except Exception as exc:
            raise PublishError(f"failed to write catalog snapshot {key}: {exc}") from exc
        try:
            latest_url = self.storage.put(LATEST_KEY, payload, content_type=JSON_CONTENT_TYPE)
        except Exception as exc:
            raise PublishError(f"snapshot {key} written but {LATEST_KEY} was not updated: {exc}") from exc

        self.logger.info("catalog_published", version_key=key, size_bytes=len(payload))
        return PublishResult(version_key=key, latest_key=LATEST_KEY, latest_url=latest_url, published_at=published_at)

    def load_latest(self) -> Optional[RootCatalog]:
        """Return the catalog ``latest`` points at, or None before the first publish.

        Raises:
            PublishError: If the store cannot be read.
            pydantic.ValidationError: If ``latest`` is not a valid catalog.
        """
        try:
            payload = self.storage.get(LATEST_KEY)
        except FileNotFoundError:
            return None
        except Exception as exc:
            raise PublishError(f"failed to read {LATEST_KEY}: {exc}") from exc
        return RootCatalog.from_json(payload)

    def list_versions(self) -> list[str]:
        return [key for key in self.storage.list(METADATA_PREFIX) if key != LATEST_KEY]


__all__ = ["CatalogPublisher", "LATEST_KEY", "METADATA_PREFIX", "PublishResult", "version_key"]
