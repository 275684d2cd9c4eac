from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from ..ingest.catalog_schema import MediaRecord, RootCatalog, SectionCatalog


class CatalogBuilder:
    """In-memory catalog for one run, deduplicated by content hash.

    The builder is the single owner of run state. Every lookup-then-insert
    happens under one lock so two callers holding identical content can never
    both register it as new.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sections: Dict[str, Dict[str, MediaRecord]] = {}
        self._by_hash: Dict[str, MediaRecord] = {}

    def find(self, content_hash: str) -> Optional[MediaRecord]:
        with self._lock:
            return self._by_hash.get(content_hash)

    def record_or_reference(
        self,
        section: str,
        name: str,
        content_hash: str,
        candidate: MediaRecord,
    ) -> Tuple[MediaRecord, bool]:
        """Place a record for ``content_hash`` under ``section``/``name``.

        If any section already holds a record with this hash, that record is
        reused verbatim and ``candidate`` is discarded.

        Args:
            section: Section the source file belongs to.
            name: Standard name allocated for the file in that section.
            content_hash: SHA256 of the file's bytes.
            candidate: Record to insert when the content is new.

        Returns:
            The stored record and whether it was a reference to existing content.

        Raises:
            ValueError: If ``name`` is already taken in ``section`` or the
                candidate describes different content.
        """
        if candidate.content_hash != content_hash:
            raise ValueError("candidate record does not match content hash")
        with self._lock:
            images = self._sections.setdefault(section, {})
            if name in images:
                raise ValueError(f"{section}/{name} is already catalogued")
            existing = self._by_hash.get(content_hash)
            if existing is not None:
                images[name] = existing
                return existing, True
            images[name] = candidate
            self._by_hash[content_hash] = candidate
            return candidate, False

    def snapshot(self) -> RootCatalog:
        with self._lock:
            sections = {
                section: SectionCatalog(images=dict(sorted(images.items())))
                for section, images in sorted(self._sections.items())
                if images
            }
        return RootCatalog(sections=sections)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(images) for images in self._sections.values())


__all__ = ["CatalogBuilder"]
