from contextlib import contextmanager

import pytest

from votemap.services.errors import DuplicateVoteError
from votemap.services.schools import effective_region_codes


class FakeVoteRepo:
    """In-memory stand-in for PostgresRepository with the votes partial unique indexes."""

    def __init__(self):
        self._seq = 0
        self.schools: dict[str, dict] = {}
        self.topics: dict[str, dict] = {
            "popular-vote": {"id": "popular-vote", "title": "서울 vs 부산", "status": "LIVE"},
        }
        self.options: list[dict] = [
            {"topic_id": "popular-vote", "option_key": "seoul", "option_label": "서울", "position": 1},
            {"topic_id": "popular-vote", "option_key": "busan", "option_label": "부산", "position": 2},
        ]
        self.votes: list[dict] = []
        self.users: dict[str, dict] = {}
        self.aggregate_available = True
        self.page_calls: list[tuple[int, int]] = []
        self.region_updates: list[str] = []
        self.parent_updates: list[tuple[str, str | None]] = []
        self.transactions = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield self

    # schools

    def add_school(self, **fields) -> dict:
        row = {
            "id": self._next_id("school"),
            "source": "local_xls",
            "school_code": fields.get("school_code") or str(self._seq),
            "school_name": "테스트대학교",
            "school_level": "university",
            "campus_type": None,
            "parent_school_id": None,
            "sido_name": None,
            "sido_code": None,
            "sigungu_name": None,
            "sigungu_code": None,
            "address": None,
            "is_active": True,
        }
        row.update(fields)
        self.schools[row["id"]] = row
        return dict(row)

    def find_school_by_key(self, source, school_code):
        for row in self.schools.values():
            if row["source"] == source and row["school_code"] == school_code:
                return dict(row)
        return None

    def get_school(self, school_id):
        row = self.schools.get(school_id)
        return dict(row) if row else None

    def insert_school(self, school):
        existing = self.find_school_by_key(school["source"], school["school_code"])
        if existing:
            return existing
        row = {"id": self._next_id("school"), **school}
        self.schools[row["id"]] = row
        return dict(row)

    def update_school_region(self, school_id, *, sido_code, sigungu_code, sigungu_name):
        self.region_updates.append(school_id)
        row = self.schools[school_id]
        row.update(sido_code=sido_code, sigungu_code=sigungu_code, sigungu_name=sigungu_name)
        return dict(row)

    def upsert_schools(self, schools):
        for school in schools:
            existing = self.find_school_by_key(school["source"], school["school_code"])
            if existing is None:
                self.insert_school(dict(school))
                continue
            row = self.schools[existing["id"]]
            for field in ("sido_code", "sigungu_name", "sigungu_code"):
                if row.get(field) is None:
                    row[field] = school.get(field)
            for field in ("school_name", "school_level", "campus_type", "sido_name", "address", "is_active"):
                row[field] = school.get(field)
        return len(schools)

    def fetch_schools_by_source(self, source):
        return [dict(row) for row in self.schools.values() if row["source"] == source]

    def update_school_parent(self, school_id, parent_school_id):
        self.parent_updates.append((school_id, parent_school_id))
        self.schools[school_id]["parent_school_id"] = parent_school_id

    def fetch_schools_missing_region(self, *, offset, limit):
        missing = [dict(row) for row in self.schools.values() if not row.get("sido_code") or not row.get("sigungu_code")]
        return missing[offset : offset + limit]

    def search_local_schools(self, query, levels, limit):
        rows = [
            dict(row)
            for row in self.schools.values()
            if row["source"] == "local_xls" and row["school_level"] in levels and query in row["school_name"]
        ]
        return rows[:limit]

    # topics

    def get_topic(self, topic_id):
        topic = self.topics.get(topic_id)
        return dict(topic) if topic else None

    def fetch_topics(self, *, status=None, topic_ids=None):
        rows = [dict(topic) for topic in self.topics.values()]
        if status is not None:
            rows = [row for row in rows if row["status"] == status]
        if topic_ids:
            rows = [row for row in rows if row["id"] in topic_ids]
        return rows

    def fetch_topic_options(self, topic_ids):
        rows = [dict(option) for option in self.options if option["topic_id"] in topic_ids]
        return sorted(rows, key=lambda row: row["position"])

    def find_option(self, topic_id, option_key):
        for option in self.options:
            if option["topic_id"] == topic_id and option["option_key"] == option_key:
                return dict(option)
        return None

    # votes

    def find_vote_id(self, topic_id, *, user_id=None, guest_token=None):
        for vote in self.votes:
            if vote["topic_id"] != topic_id:
                continue
            if user_id and vote["user_id"] == user_id:
                return vote["id"]
            if not user_id and guest_token and vote["guest_token"] == guest_token:
                return vote["id"]
        return None

    def _violates_unique(self, topic_id, user_id, guest_token, skip_id=None) -> bool:
        for vote in self.votes:
            if vote["id"] == skip_id or vote["topic_id"] != topic_id:
                continue
            if user_id and vote["user_id"] == user_id:
                return True
            if guest_token and vote["guest_token"] == guest_token:
                return True
        return False

    def insert_vote(self, vote):
        if bool(vote.get("user_id")) == bool(vote.get("guest_token")):
            raise AssertionError("votes_identity_check violated")
        if self._violates_unique(vote["topic_id"], vote.get("user_id"), vote.get("guest_token")):
            raise DuplicateVoteError(f"vote already exists for topic {vote['topic_id']}")
        row = {"id": self._next_id("vote"), "merged_from_guest": False, "created_at": None, **vote}
        self.votes.append(row)
        return dict(row)

    def fetch_guest_votes(self, guest_token):
        return [
            {"id": vote["id"], "topic_id": vote["topic_id"]}
            for vote in self.votes
            if vote["guest_token"] == guest_token and vote["user_id"] is None
        ]

    def delete_vote(self, vote_id):
        self.votes = [vote for vote in self.votes if vote["id"] != vote_id]

    def reassign_guest_vote(self, vote_id, user_id):
        vote = next(vote for vote in self.votes if vote["id"] == vote_id)
        if self._violates_unique(vote["topic_id"], user_id, None, skip_id=vote_id):
            raise DuplicateVoteError(f"user already voted on the topic of vote {vote_id}")
        vote.update(user_id=user_id, guest_token=None, merged_from_guest=True)

    def _joined_votes(self, topic_id=None):
        rows = []
        for vote in self.votes:
            if topic_id is not None and vote["topic_id"] != topic_id:
                continue
            school = self.schools.get(vote["school_id"])
            school_sido_code, school_sigungu_code = effective_region_codes(self, school) if school else (None, None)
            rows.append(
                {
                    "id": vote["id"],
                    "option_key": vote["option_key"],
                    "sido_code": vote.get("sido_code"),
                    "sigungu_code": vote.get("sigungu_code"),
                    "school_sido_code": school_sido_code,
                    "school_sigungu_code": school_sigungu_code,
                }
            )
        return rows

    def fetch_region_vote_stats(self, topic_id, level):
        if not self.aggregate_available:
            return None
        by_position = {o["position"]: o["option_key"] for o in self.options if o["topic_id"] == topic_id}
        stats: dict[str, dict] = {}
        for row in self._joined_votes(topic_id):
            if level == "sigungu":
                region = (row["sigungu_code"] or "").strip() or (row["school_sigungu_code"] or "").strip()
            else:
                region = (row["sido_code"] or "").strip() or (row["school_sido_code"] or "").strip()
            if not region:
                continue
            stat = stats.setdefault(region, {"region": region, "total": 0, "count_a": 0, "count_b": 0})
            stat["total"] += 1
            if row["option_key"] == by_position.get(1):
                stat["count_a"] += 1
            elif row["option_key"] == by_position.get(2):
                stat["count_b"] += 1
        for stat in stats.values():
            if stat["count_a"] > stat["count_b"]:
                stat["winner"] = "A"
            elif stat["count_b"] > stat["count_a"]:
                stat["winner"] = "B"
            else:
                stat["winner"] = "TIE"
        return list(stats.values())

    def fetch_topic_votes_page(self, topic_id, *, offset, limit):
        self.page_calls.append((offset, limit))
        return self._joined_votes(topic_id)[offset : offset + limit]

    def fetch_votes_with_school_regions(self, *, offset, limit):
        return self._joined_votes()[offset : offset + limit]

    def update_vote_region(self, vote_id, *, sido_code, sigungu_code):
        vote = next(vote for vote in self.votes if vote["id"] == vote_id)
        vote.update(sido_code=sido_code, sigungu_code=sigungu_code)

    # users

    def get_user_profile(self, user_id):
        row = self.users.get(user_id)
        return dict(row) if row else None

    def upsert_user_profile(self, profile):
        previous = self.users.get(profile["user_id"]) or {}
        row = dict(profile)
        row["email"] = profile.get("email") or previous.get("email")
        self.users[row["user_id"]] = row


@pytest.fixture
def repo() -> FakeVoteRepo:
    return FakeVoteRepo()
