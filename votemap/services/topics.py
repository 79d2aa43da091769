from __future__ import annotations

from typing import Any

DEFAULT_TOPIC_STATUS = "LIVE"
AB_POSITIONS = (1, 2)


def parse_topic_ids(raw: str | None) -> list[str]:
    ids: list[str] = []
    for value in (raw or "").split(","):
        value = value.strip()
        if value and value not in ids:
            ids.append(value)
    return ids


def has_ab_options(topic: dict[str, Any]) -> bool:
    positions = {option["position"] for option in topic["options"]}
    return all(position in positions for position in AB_POSITIONS)


def list_topics(repo, *, status: str = DEFAULT_TOPIC_STATUS, ids: list[str] | None = None) -> list[dict[str, Any]]:
    """Votable topics (both A/B slots filled); requested ids keep the caller's order."""
    status = (status or DEFAULT_TOPIC_STATUS).strip()
    requested_ids = ids or []
    topic_rows = repo.fetch_topics(
        status=None if status.upper() == "ALL" else status,
        topic_ids=requested_ids or None,
    )
    if not topic_rows:
        return []

    options_by_topic: dict[str, list[dict[str, Any]]] = {}
    for row in repo.fetch_topic_options([row["id"] for row in topic_rows]):
        if row.get("position") not in AB_POSITIONS:
            continue
        options_by_topic.setdefault(row["topic_id"], []).append(
            {"key": row["option_key"], "label": row["option_label"], "position": row["position"]}
        )

    topics = [
        {
            "id": row["id"],
            "title": row["title"],
            "status": row["status"],
            "options": sorted(options_by_topic.get(row["id"], []), key=lambda option: option["position"]),
        }
        for row in topic_rows
    ]
    topics = [topic for topic in topics if has_ab_options(topic)]
    if not requested_ids:
        return topics

    by_id = {topic["id"]: topic for topic in topics}
    return [by_id[topic_id] for topic_id in requested_ids if topic_id in by_id]
