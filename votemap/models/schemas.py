from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

SchoolSource = Literal["nais", "local_xls"]
SchoolLevel = Literal["middle", "high", "university", "graduate"]
Gender = Literal["male", "female", "other", "prefer_not_to_say"]
RegionLevel = Literal["sido", "sigungu"]
RegionWinner = Literal["A", "B", "TIE"]


class SchoolItem(BaseModel):
    id: str | None = None
    source: SchoolSource
    school_code: str = Field(min_length=1)
    school_name: str = Field(min_length=1)
    school_level: SchoolLevel
    campus_type: str | None = None
    parent_school_id: str | None = None
    sido_name: str | None = None
    sido_code: str | None = None
    sigungu_name: str | None = None
    sigungu_code: str | None = None
    address: str | None = None
    is_active: bool = True


class VoteProfileIn(BaseModel):
    birth_year: int = Field(ge=1900, le=2100)
    gender: Gender
    school: SchoolItem


class VoteSubmitIn(BaseModel):
    topic_id: str = Field(min_length=1)
    option_key: str = Field(min_length=1)
    guest_token: UUID | None = None
    profile: VoteProfileIn | None = None


class VoteOut(BaseModel):
    id: str
    topic_id: str
    option_key: str
    user_id: str | None = None
    guest_token: str | None = None
    school_id: str
    aggregate_school_id: str
    birth_year: int
    gender: Gender
    sido_code: str | None = None
    sigungu_code: str | None = None
    merged_from_guest: bool = False
    created_at: datetime | None = None


class VoteSubmitOut(BaseModel):
    vote: VoteOut


class MergeGuestIn(BaseModel):
    guest_token: UUID


class MergeResultOut(BaseModel):
    moved: int = 0
    skipped: int = 0


class MergeGuestOut(BaseModel):
    result: MergeResultOut


class RegionVoteStatOut(BaseModel):
    total: int = 0
    count_a: int = 0
    count_b: int = 0
    winner: RegionWinner = "TIE"


class RegionStatsSummaryOut(BaseModel):
    total_votes: int = 0
    count_a: int = 0
    count_b: int = 0


class RegionStatsOut(BaseModel):
    topic_id: str
    level: RegionLevel
    stats_by_code: dict[str, RegionVoteStatOut] = Field(default_factory=dict)
    summary: RegionStatsSummaryOut = Field(default_factory=RegionStatsSummaryOut)
    source: Literal["aggregate", "scan"] = "aggregate"


class TopicOptionOut(BaseModel):
    key: str
    label: str
    position: Literal[1, 2]


class TopicOut(BaseModel):
    id: str
    title: str
    status: str
    options: list[TopicOptionOut] = Field(default_factory=list)


class TopicListOut(BaseModel):
    topics: list[TopicOut] = Field(default_factory=list)


class SchoolSearchOut(BaseModel):
    items: list[SchoolItem] = Field(default_factory=list)


class UserProfileOut(BaseModel):
    user_id: str
    birth_year: int | None = None
    gender: Gender | None = None
    school_id: str | None = None
    sido_code: str | None = None
    sigungu_code: str | None = None
