# ingest/models.py
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PreviewSource(str, Enum):
    HTML = "html"
    STRUCTURED_SERVICE = "structured-service"
    DATASET_SERVICE = "dataset-service"


class ProductPreview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    url: str
    canonical_url: Optional[str] = Field(default=None, alias="canonicalUrl")
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    availability: Optional[str] = None
    source: PreviewSource = PreviewSource.HTML
    confidence: float = Field(default=0.0, ge=0, le=1)
    warnings: List[str] = Field(default_factory=list)

    def to_document(self) -> dict:
        """Serialize for the wire and the store, omitting unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def is_weak(self) -> bool:
        return (
            not self.title
            or not self.image
            or self.price is None
            or not self.currency
        )

    def has_core_data(self) -> bool:
        return bool(self.title or self.image or self.price is not None)


class CacheEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str
    normalized_url: str = Field(alias="normalizedUrl")
    preview: ProductPreview
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")


@dataclass
class StageResult:
    """What a single extraction stage hands back to the pipeline."""

    preview: Optional[ProductPreview]
    warnings: List[str] = field(default_factory=list)
