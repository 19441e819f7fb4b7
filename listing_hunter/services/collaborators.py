from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from listing_hunter.schemas.listings import Listing, ListingSchema, SYSTEM_MANAGED_FIELDS


class CollaboratorError(Exception):
    """Raised when a remote collaborator call fails or returns an unusable payload."""


@dataclass(slots=True)
class DiscoveryResult:
    listings: list[Listing] = field(default_factory=list)
    tool_call_count: int = 0
    steps_used: int = 0
    rejected: int = 0


class RatingResult(BaseModel):
    rating: int = Field(ge=1, le=5)
    reason: str


class DiscoverFn(Protocol):
    async def __call__(
        self,
        *,
        source_tools: Sequence[Any],
        schema: ListingSchema,
        preference_profile: str | None,
        source_name: str,
    ) -> DiscoveryResult: ...


class HydrateFn(Protocol):
    async def __call__(self, listing: Listing) -> Mapping[str, Any] | None: ...


class EnrichFn(Protocol):
    async def __call__(
        self,
        listing: Listing,
        prompt: str,
        preference_profile: str | None,
    ) -> Mapping[str, Any] | None: ...


class RateFn(Protocol):
    async def __call__(
        self,
        listing: Listing,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> RatingResult | Mapping[str, Any] | None: ...


class CalibrateFn(Protocol):
    async def __call__(
        self,
        overrides: Sequence[Any],
        current_log: str | None,
        preference_profile: str | None,
    ) -> str: ...


def coerce_rating(result: RatingResult | Mapping[str, Any] | None) -> RatingResult | None:
    """Normalize a rate result; raises pydantic.ValidationError when out of range."""
    if result is None or isinstance(result, RatingResult):
        return result
    return RatingResult.model_validate(dict(result))


def serialize_listing(listing: Listing) -> dict[str, Any]:
    """Listing payload for collaborators, without system-managed fields."""
    payload = listing.model_dump(mode="json", exclude=set(SYSTEM_MANAGED_FIELDS) - {"id"})
    metadata = payload.pop("metadata", {})
    return {**metadata, **payload}


class RemoteCollaborators:
    """Calls a collaborator service over HTTP.

    Each stage is a POST to ``{base_url}/{stage}``; the methods match the
    collaborator protocols so an instance can be wired straight into the
    orchestrator and calibration loop.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def discover(
        self,
        *,
        source_tools: Sequence[Any],
        schema: ListingSchema,
        preference_profile: str | None,
        source_name: str,
    ) -> DiscoveryResult:
        payload = await self._post(
            "discover",
            {
                "source_tools": list(source_tools),
                "extension_fields": list(schema.extension_fields),
                "preference_profile": preference_profile,
                "source_name": source_name,
            },
        )
        records = payload.get("records")
        if not isinstance(records, list):
            raise CollaboratorError("discover response is missing a records list")
        listings, rejected = schema.build_listings(
            [record for record in records if isinstance(record, dict)],
            source_name=source_name,
        )
        return DiscoveryResult(
            listings=listings,
            tool_call_count=int(payload.get("tool_call_count") or 0),
            steps_used=int(payload.get("steps_used") or 0),
            rejected=rejected + sum(1 for record in records if not isinstance(record, dict)),
        )

    async def hydrate(self, listing: Listing) -> Mapping[str, Any] | None:
        payload = await self._post("hydrate", {"listing": serialize_listing(listing)})
        return _patch_from(payload)

    async def enrich(self, listing: Listing, prompt: str, preference_profile: str | None) -> Mapping[str, Any] | None:
        payload = await self._post(
            "enrich",
            {
                "listing": serialize_listing(listing),
                "prompt": prompt,
                "preference_profile": preference_profile,
            },
        )
        return _patch_from(payload)

    async def rate(
        self,
        listing: Listing,
        preference_profile: str | None,
        calibration_log: str | None,
    ) -> RatingResult | None:
        payload = await self._post(
            "rate",
            {
                "listing": serialize_listing(listing),
                "preference_profile": preference_profile,
                "calibration_log": calibration_log,
            },
        )
        result = payload.get("result")
        if result is None:
            return None
        if not isinstance(result, dict):
            raise CollaboratorError("rate response result must be an object or null")
        return RatingResult.model_validate(result)

    async def calibrate(
        self,
        overrides: Sequence[Any],
        current_log: str | None,
        preference_profile: str | None,
    ) -> str:
        payload = await self._post(
            "calibrate",
            {
                "overrides": [asdict(item) if hasattr(item, "__dataclass_fields__") else item for item in overrides],
                "current_log": current_log,
                "preference_profile": preference_profile,
            },
        )
        calibration_log = payload.get("calibration_log")
        if not isinstance(calibration_log, str):
            raise CollaboratorError("calibrate response is missing calibration_log")
        return calibration_log

    async def _post(self, stage: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{stage}"
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=payload, headers=self.headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"{stage} collaborator call failed: {exc}") from exc
        except ValueError as exc:
            raise CollaboratorError(f"{stage} collaborator returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise CollaboratorError(f"{stage} collaborator returned a non-object payload")
        return body


def _patch_from(payload: dict[str, Any]) -> Mapping[str, Any] | None:
    patch = payload.get("patch")
    if patch is None:
        return None
    if not isinstance(patch, dict):
        raise CollaboratorError("patch must be an object or null")
    return patch
