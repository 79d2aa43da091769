import psycopg
import pytest
from fastapi.testclient import TestClient

from votemap.api.dependencies import get_auth_client, get_repository, get_school_directory, get_vote_policy
from votemap.main import app
from votemap.models.schemas import SchoolItem
from votemap.services.auth import AuthUser
from votemap.services.votes import VotePolicy

GUEST_TOKEN = "0b6f3c1e-2a44-4c1d-9f0e-5a8b7c6d5e4f"
AUTH = {"Authorization": "Bearer good-token"}

SCHOOL = {
    "source": "nais",
    "school_code": "7010057",
    "school_name": "서울고등학교",
    "school_level": "high",
    "sido_name": "서울특별시",
    "address": "서울특별시 서초구 효령로 197",
}
PROFILE = {"birth_year": 2008, "gender": "female", "school": SCHOOL}


class FakeAuthClient:
    def resolve_user(self, authorization):  # noqa: ANN001
        if authorization == "Bearer good-token":
            return AuthUser(id="user-1", email="voter@example.com")
        return None


class FakeDirectory:
    def search(self, query, *, levels, limit):  # noqa: ANN001
        return [SchoolItem(**SCHOOL)]


@pytest.fixture
def client(repo):
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_auth_client] = lambda: FakeAuthClient()
    app.dependency_overrides[get_school_directory] = lambda: FakeDirectory()
    app.dependency_overrides[get_vote_policy] = lambda: VotePolicy()
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_list_topics(client):
    res = client.get("/api/v1/votes/topics")

    assert res.status_code == 200
    topic = res.json()["topics"][0]
    assert topic["id"] == "popular-vote"
    assert [option["key"] for option in topic["options"]] == ["seoul", "busan"]


def test_guest_vote_then_duplicate(client):
    body = {"topic_id": "popular-vote", "option_key": "seoul", "guest_token": GUEST_TOKEN, "profile": PROFILE}

    first = client.post("/api/v1/votes", json=body)
    second = client.post("/api/v1/votes", json=body)

    assert first.status_code == 201
    vote = first.json()["vote"]
    assert vote["guest_token"] == GUEST_TOKEN
    assert (vote["sido_code"], vote["sigungu_code"]) == ("11", "11220")
    assert second.status_code == 409
    assert second.json()["code"] == "DUPLICATE_VOTE"


def test_vote_without_identity(client):
    res = client.post("/api/v1/votes", json={"topic_id": "popular-vote", "option_key": "seoul", "profile": PROFILE})

    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_IDENTITY"


def test_vote_with_unknown_option(client):
    res = client.post(
        "/api/v1/votes",
        json={"topic_id": "popular-vote", "option_key": "daegu", "guest_token": GUEST_TOKEN, "profile": PROFILE},
    )

    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_OPTION"


def test_vote_with_malformed_guest_token(client):
    res = client.post(
        "/api/v1/votes",
        json={"topic_id": "popular-vote", "option_key": "seoul", "guest_token": "not-a-uuid", "profile": PROFILE},
    )

    assert res.status_code == 422


def test_logged_in_vote_saves_profile(client, repo):
    res = client.post(
        "/api/v1/votes",
        json={"topic_id": "popular-vote", "option_key": "busan", "profile": PROFILE},
        headers=AUTH,
    )

    assert res.status_code == 201
    assert res.json()["vote"]["user_id"] == "user-1"
    assert repo.users["user-1"]["birth_year"] == 2008


def test_merge_guest_requires_login(client):
    res = client.post("/api/v1/votes/merge-guest", json={"guest_token": GUEST_TOKEN})

    assert res.status_code == 401


def test_merge_guest_moves_votes(client, repo):
    client.post(
        "/api/v1/votes",
        json={"topic_id": "popular-vote", "option_key": "seoul", "guest_token": GUEST_TOKEN, "profile": PROFILE},
    )

    res = client.post("/api/v1/votes/merge-guest", json={"guest_token": GUEST_TOKEN}, headers=AUTH)

    assert res.status_code == 200
    assert res.json() == {"result": {"moved": 1, "skipped": 0}}
    assert repo.votes[0]["user_id"] == "user-1"


def test_region_stats(client):
    client.post(
        "/api/v1/votes",
        json={"topic_id": "popular-vote", "option_key": "seoul", "guest_token": GUEST_TOKEN, "profile": PROFILE},
    )

    res = client.get("/api/v1/votes/region-stats", params={"topic_id": "popular-vote", "level": "sigungu"})

    assert res.status_code == 200
    body = res.json()
    assert body["stats_by_code"] == {"11220": {"total": 1, "count_a": 1, "count_b": 0, "winner": "A"}}
    assert body["summary"] == {"total_votes": 1, "count_a": 1, "count_b": 0}
    assert body["source"] == "aggregate"


def test_region_stats_unknown_topic_and_level(client):
    missing = client.get("/api/v1/votes/region-stats", params={"topic_id": "missing"})
    bad_level = client.get("/api/v1/votes/region-stats", params={"topic_id": "popular-vote", "level": "dong"})

    assert missing.status_code == 404
    assert missing.json()["code"] == "TOPIC_NOT_FOUND"
    assert bad_level.status_code == 422


def test_school_search(client, repo):
    repo.add_school(school_code="0000001", school_name="서울대학교", school_level="university")

    res = client.get("/api/v1/schools/search", params={"q": "서울"})
    too_many = client.get("/api/v1/schools/search", params={"q": "서울", "limit": 31})

    assert res.status_code == 200
    assert [item["source"] for item in res.json()["items"]] == ["local_xls", "nais"]
    assert too_many.status_code == 422


def test_profile_roundtrip_requires_login(client):
    assert client.get("/api/v1/me/profile").status_code == 401
    assert client.get("/api/v1/me/profile", headers=AUTH).status_code == 404

    saved = client.put("/api/v1/me/profile", json=PROFILE, headers=AUTH)
    fetched = client.get("/api/v1/me/profile", headers=AUTH)

    assert saved.status_code == 200
    assert saved.json()["sigungu_code"] == "11220"
    assert fetched.json()["school_id"] == saved.json()["school_id"]


def test_database_error_maps_to_503(client, repo, monkeypatch):
    err = psycopg.OperationalError("serialization failure")
    err.sqlstate = "40001"

    def broken_get_topic(topic_id):  # noqa: ANN001
        raise err

    monkeypatch.setattr(repo, "get_topic", broken_get_topic)

    res = client.get("/api/v1/votes/region-stats", params={"topic_id": "popular-vote"})

    assert res.status_code == 503
    assert res.json()["detail"] == "database query failed (40001)"
