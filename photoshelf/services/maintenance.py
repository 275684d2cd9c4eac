from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Set
from urllib.parse import unquote, urlsplit

from ..core.logging import get_logger
from ..core.storage import Storage
from ..ingest.catalog_schema import RootCatalog
from .publisher import METADATA_PREFIX
from .uploader import ROLE_PREFIXES

CACHE_PREFIXES = (f"{ROLE_PREFIXES['thumb']}/", f"{ROLE_PREFIXES['preview']}/", METADATA_PREFIX)
ASSET_PREFIXES = tuple(f"{prefix}/" for prefix in ROLE_PREFIXES.values())


@dataclass(slots=True)
class PruneReport:
    candidates: List[str] = field(default_factory=list)
    deleted: int = 0
    applied: bool = False


def clear_cache(storage: Storage) -> int:
    """Delete generated derivatives and catalog snapshots.

    Originals are kept, so the next ingest re-renders every derivative and
    publishes a fresh catalog without uploading originals again.

    Returns:
        Number of objects removed.
    """
    logger = get_logger(component="maintenance")
    removed = 0
    for prefix in CACHE_PREFIXES:
        count = storage.delete(storage.list(prefix))
        logger.info("cache_prefix_cleared", prefix=prefix, removed=count)
        removed += count
    return removed


def key_from_url(url: str) -> Optional[str]:
    """Recover the asset key from a public URL, whatever host or bucket prefix it carries.

    Asset keys are always ``<role>/<YYYY>/<MM>/<file>``, so the key is the last
    four path segments when the first of them is a role prefix.
    """
    segments = unquote(urlsplit(url).path).split("/")
    if len(segments) < 4 or segments[-4] not in ROLE_PREFIXES.values():
        return None
    return "/".join(segments[-4:])


def referenced_keys(catalog: RootCatalog) -> Set[str]:
    """Return the asset keys every URL in ``catalog`` points at."""
    keys: Set[str] = set()
    for _, _, record in catalog.records():
        for url in record.urls.model_dump().values():
            key = key_from_url(url)
            if key is not None:
                keys.add(key)
    return keys


def find_unreferenced(storage: Storage, catalog: RootCatalog) -> List[str]:
    stored = [key for prefix in ASSET_PREFIXES for key in storage.list(prefix)]
    live = referenced_keys(catalog)
    return sorted(key for key in stored if key not in live)


def prune(storage: Storage, catalog: Optional[RootCatalog], *, apply: bool = False) -> PruneReport:
    """Report, and optionally delete, asset objects the catalog no longer uses.

    Without a published catalog, or when a catalog URL does not name an asset
    key, nothing is considered unreferenced, so live objects are never wiped.

    Args:
        storage: Store to inspect.
        catalog: The latest published catalog, or None.
        apply: Delete the candidates instead of only listing them.

    Returns:
        The candidate keys and how many were deleted.
    """
    logger = get_logger(component="maintenance")
    report = PruneReport(applied=apply)
    if catalog is None:
        logger.warning("prune_without_catalog")
        return report
    urls = [url for _, _, record in catalog.records() for url in record.urls.model_dump().values()]
    unresolved = [url for url in urls if key_from_url(url) is None]
    if unresolved:
        logger.warning("prune_unresolved_urls", count=len(unresolved), example=unresolved[0])
        return report
    report.candidates = find_unreferenced(storage, catalog)
    if apply and report.candidates:
        report.deleted = storage.delete(report.candidates)
    logger.info("prune_finished", candidates=len(report.candidates), deleted=report.deleted, applied=apply)
    return report


__all__ = [
    "ASSET_PREFIXES",
    "CACHE_PREFIXES",
    "PruneReport",
    "clear_cache",
    "find_unreferenced",
    "key_from_url",
    "prune",
    "referenced_keys",
]
