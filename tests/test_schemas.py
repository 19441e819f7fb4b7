from __future__ import annotations

from pydantic import BaseModel

from listing_hunter.schemas.listings import Listing, ListingSchema


class RentalFields(BaseModel):
    weekly_rent: int
    pets_allowed: bool = False


def test_with_patch_splits_base_and_extension_fields() -> None:
    listing = Listing(
        source_name="trademe",
        source_id="tm-1",
        source_url="https://example.com/tm-1",
        title="Flat",
        ai_rating=3,
        metadata={"weekly_rent": 500},
    )

    patched = listing.with_patch({"title": "Sunny flat", "weekly_rent": 550, "ai_rating": 1, "id": "other"})

    assert patched.title == "Sunny flat"
    assert patched.metadata == {"weekly_rent": 550}
    assert patched.ai_rating == 3
    assert patched.id == listing.id
    assert listing.title == "Flat"


def test_build_listings_stamps_system_fields_and_drops_invalid_records() -> None:
    schema = ListingSchema(RentalFields)

    listings, rejected = schema.build_listings(
        [
            {
                "id": "from-source",
                "source_id": "tm-1",
                "source_url": "https://example.com/tm-1",
                "title": "Flat",
                "weekly_rent": "480",
                "user_rating": 5,
                "archived": True,
            },
            {"source_id": "tm-2", "source_url": "https://example.com/tm-2", "title": "No rent"},
            {"source_id": "tm-3", "title": "No url", "weekly_rent": 400},
        ],
        source_name="trademe",
    )

    assert rejected == 2
    assert len(listings) == 1
    listing = listings[0]
    assert listing.id != "from-source"
    assert listing.source_name == "trademe"
    assert listing.user_rating is None
    assert listing.archived is False
    assert listing.metadata == {"weekly_rent": 480, "pets_allowed": False}
    assert schema.extension_fields == ("weekly_rent", "pets_allowed")


def test_schema_without_extension_model_keeps_map_open() -> None:
    schema = ListingSchema()
    assert schema.extension_fields == ()
    assert schema.validate_metadata({"anything": [1, 2]}) == {"anything": [1, 2]}
