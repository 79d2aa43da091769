from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from votemap.models.schemas import VoteProfileIn
from votemap.services.errors import (
    DuplicateVoteError,
    InvalidIdentityError,
    InvalidOptionError,
    MissingProfileError,
    SchoolNotFoundError,
)
from votemap.services.schools import ensure_school, get_school_identity

logger = logging.getLogger(__name__)

UNLIMITED_GUEST_TOKEN_PREFIX = "admin"


@dataclass(frozen=True)
class Voter:
    user_id: str | None = None
    email: str | None = None
    guest_token: str | None = None

    @property
    def kind(self) -> str:
        return "user" if self.user_id else "guest"


@dataclass(frozen=True)
class VotePolicy:
    unlimited_vote_emails: frozenset[str] = field(default_factory=frozenset)

    def allows_unlimited(self, voter: Voter) -> bool:
        if not voter.user_id or not voter.email:
            return False
        return voter.email.strip().lower() in self.unlimited_vote_emails


@dataclass
class MergeResult:
    moved: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class _VoterProfile:
    birth_year: int
    gender: str
    school_id: str
    aggregate_school_id: str
    sido_code: str | None
    sigungu_code: str | None


def _profile_from_input(repo, profile: VoteProfileIn) -> _VoterProfile:
    ensured = ensure_school(repo, profile.school)
    return _VoterProfile(
        birth_year=profile.birth_year,
        gender=profile.gender,
        school_id=ensured.school_id,
        aggregate_school_id=ensured.aggregate_school_id,
        sido_code=ensured.sido_code,
        sigungu_code=ensured.sigungu_code,
    )


def _stored_profile(repo, user_id: str) -> _VoterProfile:
    row = repo.get_user_profile(user_id)
    if not row or not row.get("birth_year") or not row.get("gender") or not row.get("school_id"):
        raise MissingProfileError("birth year, gender and school are required before the first vote")

    identity = get_school_identity(repo, row["school_id"])
    if identity is None:
        raise SchoolNotFoundError(f"stored school {row['school_id']} not found")

    return _VoterProfile(
        birth_year=row["birth_year"],
        gender=row["gender"],
        school_id=identity.school_id,
        aggregate_school_id=identity.aggregate_school_id,
        sido_code=row.get("sido_code") or identity.sido_code,
        sigungu_code=row.get("sigungu_code") or identity.sigungu_code,
    )


def submit_vote(
    repo,
    *,
    topic_id: str,
    option_key: str,
    voter: Voter,
    profile: VoteProfileIn | None = None,
    policy: VotePolicy | None = None,
) -> dict[str, Any]:
    policy = policy or VotePolicy()
    user_id = voter.user_id or None
    guest_token = None if user_id else (voter.guest_token or None)
    if not user_id and not guest_token:
        raise InvalidIdentityError("a user id or guest token is required to vote")

    if repo.find_option(topic_id, option_key) is None:
        raise InvalidOptionError(f"unknown option {option_key!r} for topic {topic_id!r}")

    unlimited = policy.allows_unlimited(voter)
    if not unlimited:
        existing_id = repo.find_vote_id(topic_id, user_id=user_id, guest_token=guest_token)
        if existing_id:
            logger.info("vote_duplicate_precheck topic_id=%s voter=%s", topic_id, voter.kind)
            raise DuplicateVoteError(f"already voted on topic {topic_id}")

    if profile is not None:
        voter_profile = _profile_from_input(repo, profile)
    elif user_id:
        voter_profile = _stored_profile(repo, user_id)
    else:
        raise MissingProfileError("guest voters must send a profile with the vote")

    if unlimited:
        insert_user_id = None
        insert_guest_token = f"{UNLIMITED_GUEST_TOKEN_PREFIX}-{user_id}-{uuid.uuid4()}"
    else:
        insert_user_id = user_id
        insert_guest_token = guest_token

    try:
        vote = repo.insert_vote(
            {
                "topic_id": topic_id,
                "option_key": option_key,
                "user_id": insert_user_id,
                "guest_token": insert_guest_token,
                "school_id": voter_profile.school_id,
                "aggregate_school_id": voter_profile.aggregate_school_id,
                "birth_year": voter_profile.birth_year,
                "gender": voter_profile.gender,
                "sido_code": voter_profile.sido_code,
                "sigungu_code": voter_profile.sigungu_code,
            }
        )
    except DuplicateVoteError:
        logger.info("vote_duplicate_constraint topic_id=%s voter=%s", topic_id, voter.kind)
        raise

    if profile is not None and user_id:
        _store_user_profile(repo, user_id=user_id, email=voter.email, voter_profile=voter_profile)

    logger.info(
        "vote_submitted topic_id=%s voter=%s unlimited=%s sido_code=%s",
        topic_id,
        voter.kind,
        unlimited,
        voter_profile.sido_code,
    )
    return vote


def _store_user_profile(repo, *, user_id: str, email: str | None, voter_profile: _VoterProfile) -> None:
    repo.upsert_user_profile(
        {
            "user_id": user_id,
            "email": email,
            "birth_year": voter_profile.birth_year,
            "gender": voter_profile.gender,
            "school_id": voter_profile.school_id,
            "sido_code": voter_profile.sido_code,
            "sigungu_code": voter_profile.sigungu_code,
        }
    )


def save_user_profile(repo, *, user_id: str, email: str | None, profile: VoteProfileIn) -> dict[str, Any]:
    voter_profile = _profile_from_input(repo, profile)
    _store_user_profile(repo, user_id=user_id, email=email, voter_profile=voter_profile)
    return {
        "user_id": user_id,
        "birth_year": voter_profile.birth_year,
        "gender": voter_profile.gender,
        "school_id": voter_profile.school_id,
        "sido_code": voter_profile.sido_code,
        "sigungu_code": voter_profile.sigungu_code,
    }


def get_user_profile(repo, user_id: str) -> dict[str, Any] | None:
    return repo.get_user_profile(user_id)


def merge_guest_votes(repo, *, guest_token: str, user_id: str) -> MergeResult:
    """Move a guest's votes onto a user; topics the user already voted on drop the guest row.

    Each topic is handled in its own transaction, so a rerun after an
    interruption only sees the guest rows that are still left.
    """
    if not (guest_token or "").strip():
        raise InvalidIdentityError("guest token is required")
    if not user_id:
        raise InvalidIdentityError("user id is required")

    result = MergeResult()
    for guest_vote in repo.fetch_guest_votes(guest_token):
        try:
            with repo.transaction():
                if repo.find_vote_id(guest_vote["topic_id"], user_id=user_id):
                    repo.delete_vote(guest_vote["id"])
                    outcome = "skipped"
                else:
                    repo.reassign_guest_vote(guest_vote["id"], user_id)
                    outcome = "moved"
        except DuplicateVoteError:
            # the user voted on this topic between the check and the update
            with repo.transaction():
                repo.delete_vote(guest_vote["id"])
            outcome = "skipped"

        if outcome == "moved":
            result.moved += 1
        else:
            result.skipped += 1

    logger.info("guest_votes_merged moved=%s skipped=%s", result.moved, result.skipped)
    return result
