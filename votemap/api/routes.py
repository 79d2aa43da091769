import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from votemap.api.dependencies import (
    get_current_user,
    get_region_stats_page_size,
    get_repository,
    get_school_directory,
    get_vote_policy,
    require_user,
)
from votemap.models.schemas import (
    MergeGuestIn,
    MergeGuestOut,
    MergeResultOut,
    RegionLevel,
    RegionStatsOut,
    RegionStatsSummaryOut,
    RegionVoteStatOut,
    SchoolSearchOut,
    TopicListOut,
    TopicOut,
    UserProfileOut,
    VoteOut,
    VoteProfileIn,
    VoteSubmitIn,
    VoteSubmitOut,
)
from votemap.services.auth import AuthUser
from votemap.services.region_stats import get_region_stats
from votemap.services.schools import search_schools
from votemap.services.topics import list_topics, parse_topic_ids
from votemap.services.votes import (
    Voter,
    VotePolicy,
    get_user_profile,
    merge_guest_votes,
    save_user_profile,
    submit_vote,
)

router = APIRouter(prefix="/api/v1", tags=["v1"])
logger = logging.getLogger(__name__)


@router.get("/votes/topics", response_model=TopicListOut)
def get_vote_topics(
    status: str = Query(default="LIVE", min_length=1),
    ids: str | None = Query(default=None),
    repo=Depends(get_repository),
):
    topics = list_topics(repo, status=status, ids=parse_topic_ids(ids))
    return TopicListOut(topics=[TopicOut.model_validate(topic) for topic in topics])


@router.post("/votes", response_model=VoteSubmitOut, status_code=201)
def post_vote(
    payload: VoteSubmitIn,
    repo=Depends(get_repository),
    user: AuthUser | None = Depends(get_current_user),
    policy: VotePolicy = Depends(get_vote_policy),
):
    voter = Voter(
        user_id=user.id if user else None,
        email=user.email if user else None,
        guest_token=str(payload.guest_token) if payload.guest_token else None,
    )
    vote = submit_vote(
        repo,
        topic_id=payload.topic_id,
        option_key=payload.option_key,
        voter=voter,
        profile=payload.profile,
        policy=policy,
    )
    return VoteSubmitOut(vote=VoteOut.model_validate(vote))


@router.post("/votes/merge-guest", response_model=MergeGuestOut)
def post_merge_guest_votes(
    payload: MergeGuestIn,
    repo=Depends(get_repository),
    user: AuthUser = Depends(require_user),
):
    result = merge_guest_votes(repo, guest_token=str(payload.guest_token), user_id=user.id)
    return MergeGuestOut(result=MergeResultOut(moved=result.moved, skipped=result.skipped))


@router.get("/votes/region-stats", response_model=RegionStatsOut)
def get_vote_region_stats(
    topic_id: str = Query(min_length=1),
    level: RegionLevel = Query(default="sido"),
    repo=Depends(get_repository),
    page_size: int = Depends(get_region_stats_page_size),
):
    stats = get_region_stats(repo, topic_id, level, page_size=page_size)
    return RegionStatsOut(
        topic_id=stats.topic_id,
        level=stats.level,
        stats_by_code={
            code: RegionVoteStatOut(total=stat.total, count_a=stat.count_a, count_b=stat.count_b, winner=stat.winner)
            for code, stat in stats.stats_by_code.items()
        },
        summary=RegionStatsSummaryOut(
            total_votes=stats.total_votes,
            count_a=stats.count_a,
            count_b=stats.count_b,
        ),
        source=stats.source,
    )


@router.get("/schools/search", response_model=SchoolSearchOut)
def get_schools_search(
    q: str = Query(min_length=1),
    level: Literal["middle", "high", "university", "graduate", "all"] = Query(default="all"),
    limit: int = Query(default=10, ge=1, le=30),
    repo=Depends(get_repository),
    directory=Depends(get_school_directory),
):
    return SchoolSearchOut(items=search_schools(repo, directory, query=q, level=level, limit=limit))


@router.get("/me/profile", response_model=UserProfileOut)
def get_my_profile(
    repo=Depends(get_repository),
    user: AuthUser = Depends(require_user),
):
    profile = get_user_profile(repo, user.id)
    if not profile:
        raise HTTPException(status_code=404, detail="profile not found")
    return UserProfileOut.model_validate(profile)


@router.put("/me/profile", response_model=UserProfileOut)
def put_my_profile(
    payload: VoteProfileIn,
    repo=Depends(get_repository),
    user: AuthUser = Depends(require_user),
):
    saved = save_user_profile(repo, user_id=user.id, email=user.email, profile=payload)
    logger.info("profile_saved sido_code=%s", saved.get("sido_code"))
    return UserProfileOut.model_validate(saved)
