from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
import logging
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from listing_hunter.core.timestamps import utcnow

ListingFilter = Literal["new", "shortlist", "archived", "all"]
ListingSort = Literal["rating", "newest"]

logger = logging.getLogger(__name__)


class Listing(BaseModel):
    """A discovered entity: fixed base columns plus an open map of domain fields.

    Domain fields (rent, bedrooms, commute notes, ...) live in ``metadata`` and
    are checked by the ``ListingSchema`` the application supplies.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_name: str
    source_id: str
    source_url: str
    title: str
    description: str = ""
    images: list[str] = Field(default_factory=list)
    discovered_at: datetime = Field(default_factory=utcnow)
    ai_rating: int | None = Field(default=None, ge=1, le=5)
    ai_rating_reason: str | None = None
    user_rating: int | None = Field(default=None, ge=1, le=5)
    user_rating_note: str | None = None
    archived: bool = False
    enriched_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def with_patch(self, patch: Mapping[str, Any], schema: ListingSchema | None = None) -> Listing:
        """Return a copy with a collaborator patch applied.

        Base fields are overwritten in place, system-managed fields are never
        touched by a patch, and everything else is merged into ``metadata``.
        With a ``schema`` the merged map is validated too, so a bad patch
        raises here instead of at insert time.
        """
        data = self.model_dump()
        metadata = dict(data["metadata"])
        for key, value in patch.items():
            if key in SYSTEM_MANAGED_FIELDS:
                continue
            if key in BASE_FIELDS:
                data[key] = value
            else:
                metadata[key] = value
        data["metadata"] = schema.validate_metadata(metadata) if schema is not None else metadata
        return type(self).model_validate(data)


BASE_FIELDS = frozenset(name for name in Listing.model_fields if name != "metadata")
SYSTEM_MANAGED_FIELDS = frozenset(
    {
        "id",
        "discovered_at",
        "ai_rating",
        "ai_rating_reason",
        "user_rating",
        "user_rating_note",
        "archived",
        "enriched_at",
    }
)


class ListingSchema:
    """Per-domain validator for the extension-field map.

    ``extension_model`` is a pydantic model describing the domain fields; keys
    it does not declare are kept as-is so the map stays open.
    """

    def __init__(self, extension_model: type[BaseModel] | None = None) -> None:
        self.extension_model = extension_model

    @property
    def extension_fields(self) -> tuple[str, ...]:
        if self.extension_model is None:
            return ()
        return tuple(self.extension_model.model_fields)

    def validate_metadata(self, metadata: Mapping[str, Any]) -> dict[str, Any]:
        if self.extension_model is None:
            return dict(metadata)
        validated = self.extension_model.model_validate(dict(metadata))
        return {**metadata, **validated.model_dump(mode="json")}

    def validate(self, record: Mapping[str, Any]) -> Listing:
        base: dict[str, Any] = {}
        metadata: dict[str, Any] = dict(record.get("metadata") or {})
        for key, value in record.items():
            if key == "metadata":
                continue
            if key in BASE_FIELDS:
                base[key] = value
            else:
                metadata[key] = value
        base["metadata"] = self.validate_metadata(metadata)
        return Listing.model_validate(base)

    def build_listings(
        self,
        records: Iterable[Mapping[str, Any]],
        *,
        source_name: str,
    ) -> tuple[list[Listing], int]:
        """Stamp system fields onto extracted records and validate them.

        Returns the valid listings and the number of records dropped.
        """
        now = utcnow()
        listings: list[Listing] = []
        rejected = 0
        for record in records:
            hydrated = {
                **record,
                "id": str(uuid4()),
                "source_name": record.get("source_name") or source_name,
                "discovered_at": now,
                "ai_rating": None,
                "ai_rating_reason": None,
                "user_rating": None,
                "user_rating_note": None,
                "archived": False,
                "enriched_at": None,
            }
            try:
                listings.append(self.validate(hydrated))
            except ValidationError as exc:
                rejected += 1
                logger.warning(
                    "dropping extracted record source_id=%s: %s",
                    record.get("source_id"),
                    exc.errors(include_url=False),
                )
        return listings, rejected


class ListingPage(BaseModel):
    listings: list[Listing]
    total: int


class RateListingRequest(BaseModel):
    rating: int
    note: str | None = None


class RateListingResponse(BaseModel):
    listing: Listing
    calibration_triggered: bool
