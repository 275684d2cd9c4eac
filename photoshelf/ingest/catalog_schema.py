from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Annotated, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from . import CATALOG_SCHEMA_VERSION

SchemaPath = Path(f"schema/catalog_v{CATALOG_SCHEMA_VERSION}.json")


class _CatalogModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True)


class _UrlsBase(_CatalogModel):
    original: str
    thumb: str


class ImageUrls(_UrlsBase):
    """Public addresses of an image original and its thumbnail."""


class VideoUrls(_UrlsBase):
    """Video addresses; the preview clip exists only for video."""

    preview: str


class _RecordBase(_CatalogModel):
    content_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    original_filename: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    aspect_ratio: float

    @model_validator(mode="after")
    def _check_aspect_ratio(self):
        if not math.isclose(self.aspect_ratio, self.width / self.height, rel_tol=1e-9):
            raise ValueError("aspectRatio must equal width / height")
        return self


class ImageRecord(_RecordBase):
    """Schema for a catalogued image."""

    type: Literal["image"] = "image"
    urls: ImageUrls


class VideoRecord(_RecordBase):
    """Schema for a catalogued video."""

    type: Literal["video"] = "video"
    urls: VideoUrls


MediaRecord = Annotated[Union[ImageRecord, VideoRecord], Field(discriminator="type")]


class SectionCatalog(_CatalogModel):
    """Records of one section keyed by standard name."""

    images: Dict[str, MediaRecord] = Field(default_factory=dict)


class RootCatalog(_CatalogModel):
    """The catalog document consumed by the presentation layer."""

    sections: Dict[str, SectionCatalog] = Field(default_factory=dict)

    def records(self):
        for section_name, section in self.sections.items():
            for name, record in section.images.items():
                yield section_name, name, record

    def to_json(self) -> str:
        """Serialise with sections and names in sorted order so equal catalogs are byte-identical."""
        payload = self.model_dump(mode="json", by_alias=True)
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_json(cls, payload: str | bytes) -> "RootCatalog":
        return cls.model_validate_json(payload)


def export_schema(output_path: Path = SchemaPath) -> Path:
    """Serialise the current catalog schema to disk.

    Args:
        output_path: The path to write the schema to.

    Returns:
        The path the schema was written to.
    """
    schema = RootCatalog.model_json_schema(by_alias=True)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(schema, indent=2, sort_keys=True))
    return output_path


__all__ = [
    "ImageRecord",
    "ImageUrls",
    "MediaRecord",
    "RootCatalog",
    "SchemaPath",
    "SectionCatalog",
    "VideoRecord",
    "VideoUrls",
    "export_schema",
]
