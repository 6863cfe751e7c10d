from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BadgeEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    image_url: str = Field(validation_alias=AliasChoices("imageUrl", "image_url"))
    name: str = ""


class BadgeRecord(BaseModel):
    """A POAP held by an address.

    Accepts both the canonical field names and the POAP API scan payload
    (``tokenId``, ``created``, ``event.image_url``).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Union[int, str] = Field(validation_alias=AliasChoices("id", "tokenId"))
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created"))
    event: BadgeEvent

    @field_validator("created_at", mode="before")
    @classmethod
    def _accept_space_separator(cls, value):
        # The POAP API reports "YYYY-MM-DD HH:MM:SS".
        if isinstance(value, str) and len(value) > 10 and value[10] == " ":
            return value[:10] + "T" + value[11:]
        return value

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)


class MomentGateway(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str


class MomentMedia(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    gateways: List[MomentGateway] = Field(default_factory=list)


class MomentRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))
    media: List[MomentMedia] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)


def latest_moment_url(moments: Optional[List[MomentRecord]]) -> Optional[str]:
    """Return the first gateway URL of the most recent moment, if there is one."""
    if not moments:
        return None
    latest = max(moments, key=lambda moment: moment.created_at)
    if not latest.media or not latest.media[0].gateways:
        return None
    return latest.media[0].gateways[0].url


class ImageDimensions(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int
    height: int


class ValidatedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    dimensions: ImageDimensions


class CacheEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    last_updated: str = Field(alias="lastUpdated")

    @field_validator("last_updated", mode="before")
    @classmethod
    def _stringify_timestamp(cls, value):
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class TrustedPreviewRequest(BaseModel):
    """POST body supplied by a trusted caller that already holds the badge data."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    poaps: Optional[List[BadgeRecord]] = None
    latest_moments: Optional[List[MomentRecord]] = Field(default=None, alias="latestMoments")
    poapapikey: Optional[str] = None
