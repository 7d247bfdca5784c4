"""Validated payload shapes, one model per job kind."""
from __future__ import annotations

from typing import Any, Dict, Literal, Mapping, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kdp_pipeline.errors import InvalidPayload
from kdp_pipeline.orchestrator.jobs import JobKind

MARKETPLACE_DOMAINS: Dict[str, str] = {
    "US": "www.amazon.com",
    "UK": "www.amazon.co.uk",
    "DE": "www.amazon.de",
    "FR": "www.amazon.fr",
    "ES": "www.amazon.es",
    "IT": "www.amazon.it",
    "JP": "www.amazon.co.jp",
    "CA": "www.amazon.ca",
    "AU": "www.amazon.com.au",
    "IN": "www.amazon.in",
    "MX": "www.amazon.com.mx",
    "NL": "www.amazon.nl",
    "BR": "www.amazon.com.br",
}


class _LookupPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    marketplace: str = "US"

    @field_validator("marketplace", mode="before")
    @classmethod
    def _normalise_marketplace(cls, value: Any) -> str:
        code = str(value).strip().upper()
        if code == "GB":
            code = "UK"
        if code not in MARKETPLACE_DOMAINS:
            raise ValueError(f"unsupported marketplace: {value}")
        return code


class KeywordLookup(_LookupPayload):
    query: str = Field(min_length=1, max_length=200)
    page: int = Field(default=1, ge=1, le=20)

    @field_validator("query")
    @classmethod
    def _normalise_query(cls, value: str) -> str:
        return " ".join(value.casefold().split())


class ProductLookup(_LookupPayload):
    asin: str = Field(pattern=r"^[A-Z0-9]{10}$")

    @field_validator("asin", mode="before")
    @classmethod
    def _upper_asin(cls, value: Any) -> str:
        return str(value).strip().upper()


class CategoryLookup(_LookupPayload):
    node_id: str = Field(pattern=r"^[0-9]{1,20}$")
    page: int = Field(default=1, ge=1, le=20)

    @field_validator("node_id", mode="before")
    @classmethod
    def _coerce_node(cls, value: Any) -> str:
        return str(value).strip()


class ReviewLookup(ProductLookup):
    page: int = Field(default=1, ge=1, le=50)
    sort: Literal["recent", "helpful"] = "recent"


PAYLOAD_MODELS: Dict[JobKind, Type[_LookupPayload]] = {
    JobKind.KEYWORD_LOOKUP: KeywordLookup,
    JobKind.PRODUCT_LOOKUP: ProductLookup,
    JobKind.CATEGORY_LOOKUP: CategoryLookup,
    JobKind.REVIEW_LOOKUP: ReviewLookup,
}


def coerce_kind(kind: JobKind | str) -> JobKind:
    """Return the JobKind for the supplied value or raise InvalidPayload."""
    try:
        return JobKind(kind)
    except ValueError as exc:
        raise InvalidPayload(f"unknown job kind: {kind}") from exc


def normalise_payload(kind: JobKind | str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate the payload for the kind, returning its normalized form."""
    job_kind = coerce_kind(kind)
    if not isinstance(payload, Mapping):
        raise InvalidPayload(f"{job_kind.value} payload must be an object")
    model = PAYLOAD_MODELS[job_kind]
    try:
        validated = model.model_validate(dict(payload))
    except ValidationError as exc:
        raise InvalidPayload(f"invalid {job_kind.value} payload: {exc}") from exc
    return validated.model_dump(mode="json")
