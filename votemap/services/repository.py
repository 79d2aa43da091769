import logging
from contextlib import contextmanager

import psycopg
from psycopg import errors as pg_errors

from votemap.services.errors import DuplicateVoteError

logger = logging.getLogger(__name__)

SCHOOL_COLUMNS = """
    id::text AS id,
    source,
    school_code,
    school_name,
    school_level,
    campus_type,
    parent_school_id::text AS parent_school_id,
    sido_name,
    sido_code,
    sigungu_name,
    sigungu_code,
    address,
    is_active
"""

VOTE_RETURNING = """
    id::text AS id,
    topic_id,
    option_key,
    user_id::text AS user_id,
    guest_token,
    school_id::text AS school_id,
    aggregate_school_id::text AS aggregate_school_id,
    birth_year,
    gender,
    sido_code,
    sigungu_code,
    merged_from_guest,
    created_at
"""

# A branch campus carries its parent's codes once the parent's sido is resolved;
# the branch's own sigungu fills in only when both sit in the same sido.
SCHOOL_REGION_JOIN = """
    LEFT JOIN schools s ON s.id = v.school_id
    LEFT JOIN schools p ON p.id = s.parent_school_id
"""

SCHOOL_REGION_COLUMNS = """
    CASE
        WHEN NULLIF(p.sido_code, '') IS NOT NULL THEN p.sido_code
        ELSE s.sido_code
    END AS school_sido_code,
    CASE
        WHEN NULLIF(p.sido_code, '') IS NOT NULL THEN COALESCE(
            p.sigungu_code,
            CASE WHEN s.sido_code = p.sido_code THEN s.sigungu_code END
        )
        ELSE s.sigungu_code
    END AS school_sigungu_code
"""


class PostgresRepository:
    def __init__(self, conn):
        self.conn = conn
        self._tx_depth = 0

    def rollback(self) -> None:
        self.conn.rollback()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self):
        """Group several writes into one commit; nested use joins the outer block."""
        if self._tx_depth:
            yield self
            return
        self._tx_depth += 1
        try:
            yield self
        except Exception:
            self._tx_depth -= 1
            self.conn.rollback()
            raise
        self._tx_depth -= 1
        self.conn.commit()

    # schools

    def find_school_by_key(self, source: str, school_code: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {SCHOOL_COLUMNS} FROM schools WHERE source=%s AND school_code=%s",
                (source, school_code),
            )
            return cur.fetchone()

    def get_school(self, school_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT {SCHOOL_COLUMNS} FROM schools WHERE id=%s", (school_id,))
            return cur.fetchone()

    def insert_school(self, school: dict) -> dict:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO schools (
                    source, school_code, school_name, school_level, campus_type, parent_school_id,
                    sido_name, sido_code, sigungu_name, sigungu_code, address, is_active
                )
                VALUES (
                    %(source)s, %(school_code)s, %(school_name)s, %(school_level)s, %(campus_type)s,
                    %(parent_school_id)s, %(sido_name)s, %(sido_code)s, %(sigungu_name)s, %(sigungu_code)s,
                    %(address)s, %(is_active)s
                )
                ON CONFLICT (source, school_code) DO UPDATE
                SET updated_at=schools.updated_at
                RETURNING {SCHOOL_COLUMNS}
                """,
                school,
            )
            row = cur.fetchone()
        self._commit()
        return row

    def update_school_region(
        self,
        school_id: str,
        *,
        sido_code: str | None,
        sigungu_code: str | None,
        sigungu_name: str | None,
    ) -> dict:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE schools
                SET sido_code=%s, sigungu_code=%s, sigungu_name=%s, updated_at=NOW()
                WHERE id=%s
                RETURNING {SCHOOL_COLUMNS}
                """,
                (sido_code, sigungu_code, sigungu_name, school_id),
            )
            row = cur.fetchone()
        self._commit()
        return row

    def upsert_schools(self, schools: list[dict]) -> int:
        if not schools:
            return 0
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO schools (
                    source, school_code, school_name, school_level, campus_type, parent_school_id,
                    sido_name, sido_code, sigungu_name, sigungu_code, address, is_active
                )
                VALUES (
                    %(source)s, %(school_code)s, %(school_name)s, %(school_level)s, %(campus_type)s,
                    %(parent_school_id)s, %(sido_name)s, %(sido_code)s, %(sigungu_name)s, %(sigungu_code)s,
                    %(address)s, %(is_active)s
                )
                ON CONFLICT (source, school_code) DO UPDATE
                SET school_name=EXCLUDED.school_name,
                    school_level=EXCLUDED.school_level,
                    campus_type=EXCLUDED.campus_type,
                    sido_name=EXCLUDED.sido_name,
                    sido_code=COALESCE(schools.sido_code, EXCLUDED.sido_code),
                    sigungu_name=COALESCE(schools.sigungu_name, EXCLUDED.sigungu_name),
                    sigungu_code=COALESCE(schools.sigungu_code, EXCLUDED.sigungu_code),
                    address=EXCLUDED.address,
                    is_active=EXCLUDED.is_active,
                    updated_at=NOW()
                """,
                schools,
            )
        self._commit()
        return len(schools)

    def fetch_schools_by_source(self, source: str) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id::text AS id, school_name, campus_type, parent_school_id::text AS parent_school_id
                FROM schools
                WHERE source=%s
                ORDER BY created_at ASC, id ASC
                """,
                (source,),
            )
            return cur.fetchall()

    def update_school_parent(self, school_id: str, parent_school_id: str | None) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE schools SET parent_school_id=%s, updated_at=NOW() WHERE id=%s",
                (parent_school_id, school_id),
            )
        self._commit()

    def fetch_schools_missing_region(self, *, offset: int, limit: int) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SCHOOL_COLUMNS}
                FROM schools
                WHERE sido_code IS NULL OR sigungu_code IS NULL
                ORDER BY created_at ASC, id ASC
                OFFSET %s
                LIMIT %s
                """,
                (offset, limit),
            )
            return cur.fetchall()

    def search_local_schools(self, query: str, levels: list[str], limit: int) -> list[dict]:
        if not levels:
            return []
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SCHOOL_COLUMNS}
                FROM schools
                WHERE source='local_xls'
                  AND school_level = ANY(%s)
                  AND school_name ILIKE %s
                ORDER BY school_name ASC
                LIMIT %s
                """,
                (levels, f"%{query}%", limit),
            )
            return cur.fetchall()

    # topics

    def get_topic(self, topic_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute("SELECT id, title, status, created_at FROM vote_topics WHERE id=%s", (topic_id,))
            return cur.fetchone()

    def fetch_topics(self, *, status: str | None = None, topic_ids: list[str] | None = None) -> list[dict]:
        where_clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            where_clauses.append("status = %s")
            params.append(status)
        if topic_ids:
            where_clauses.append("id = ANY(%s)")
            params.append(topic_ids)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, title, status, created_at
                FROM vote_topics
                {where_sql}
                ORDER BY created_at DESC
                """,
                tuple(params),
            )
            return cur.fetchall()

    def fetch_topic_options(self, topic_ids: list[str]) -> list[dict]:
        if not topic_ids:
            return []
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT topic_id, option_key, option_label, position
                FROM vote_options
                WHERE topic_id = ANY(%s)
                ORDER BY position ASC
                """,
                (topic_ids,),
            )
            return cur.fetchall()

    def find_option(self, topic_id: str, option_key: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT topic_id, option_key, option_label, position
                FROM vote_options
                WHERE topic_id=%s AND option_key=%s
                """,
                (topic_id, option_key),
            )
            return cur.fetchone()

    # votes

    def find_vote_id(self, topic_id: str, *, user_id: str | None = None, guest_token: str | None = None) -> str | None:
        if user_id:
            sql = "SELECT id::text AS id FROM votes WHERE topic_id=%s AND user_id=%s"
            params = (topic_id, user_id)
        elif guest_token:
            sql = "SELECT id::text AS id FROM votes WHERE topic_id=%s AND guest_token=%s"
            params = (topic_id, guest_token)
        else:
            return None
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return row["id"] if row else None

    def insert_vote(self, vote: dict) -> dict:
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO votes (
                        topic_id, option_key, user_id, guest_token, school_id, aggregate_school_id,
                        birth_year, gender, sido_code, sigungu_code
                    )
                    VALUES (
                        %(topic_id)s, %(option_key)s, %(user_id)s, %(guest_token)s, %(school_id)s,
                        %(aggregate_school_id)s, %(birth_year)s, %(gender)s, %(sido_code)s, %(sigungu_code)s
                    )
                    RETURNING {VOTE_RETURNING}
                    """,
                    vote,
                )
                row = cur.fetchone()
        except pg_errors.UniqueViolation as exc:
            self.conn.rollback()
            raise DuplicateVoteError(f"vote already exists for topic {vote.get('topic_id')}") from exc
        self._commit()
        return row

    def fetch_guest_votes(self, guest_token: str) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id::text AS id, topic_id
                FROM votes
                WHERE guest_token=%s AND user_id IS NULL
                ORDER BY created_at ASC, id ASC
                """,
                (guest_token,),
            )
            return cur.fetchall()

    def delete_vote(self, vote_id: str) -> None:
        with self.conn.cursor() as cur:
            cur.execute("DELETE FROM votes WHERE id=%s", (vote_id,))
        self._commit()

    def reassign_guest_vote(self, vote_id: str, user_id: str) -> None:
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE votes
                    SET user_id=%s, guest_token=NULL, merged_from_guest=TRUE
                    WHERE id=%s AND user_id IS NULL
                    """,
                    (user_id, vote_id),
                )
        except pg_errors.UniqueViolation as exc:
            self.conn.rollback()
            raise DuplicateVoteError(f"user already voted on the topic of vote {vote_id}") from exc
        self._commit()

    def fetch_region_vote_stats(self, topic_id: str, level: str) -> list[dict] | None:
        """Server-side aggregation; None when the function is unavailable."""
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    "SELECT region, total, count_a, count_b, winner FROM get_region_vote_stats(%s, %s)",
                    (topic_id, level),
                )
                return cur.fetchall()
        except psycopg.Error as exc:
            logger.warning("region_stats_aggregate_failed topic_id=%s sqlstate=%s", topic_id, exc.sqlstate)
            self.conn.rollback()
            return None

    def fetch_topic_votes_page(self, topic_id: str, *, offset: int, limit: int) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    v.option_key,
                    v.sido_code,
                    v.sigungu_code,
                    {SCHOOL_REGION_COLUMNS}
                FROM votes v
                {SCHOOL_REGION_JOIN}
                WHERE v.topic_id=%s
                ORDER BY v.created_at ASC, v.id ASC
                OFFSET %s
                LIMIT %s
                """,
                (topic_id, offset, limit),
            )
            return cur.fetchall()

    def fetch_votes_with_school_regions(self, *, offset: int, limit: int) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                    v.id::text AS id,
                    v.sido_code,
                    v.sigungu_code,
                    {SCHOOL_REGION_COLUMNS}
                FROM votes v
                {SCHOOL_REGION_JOIN}
                ORDER BY v.created_at ASC, v.id ASC
                OFFSET %s
                LIMIT %s
                """,
                (offset, limit),
            )
            return cur.fetchall()

    def update_vote_region(self, vote_id: str, *, sido_code: str | None, sigungu_code: str | None) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                "UPDATE votes SET sido_code=%s, sigungu_code=%s WHERE id=%s",
                (sido_code, sigungu_code, vote_id),
            )
        self._commit()

    # users

    def get_user_profile(self, user_id: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    id::text AS user_id,
                    birth_year,
                    gender,
                    school_id::text AS school_id,
                    sido_code,
                    sigungu_code
                FROM users
                WHERE id=%s
                """,
                (user_id,),
            )
            return cur.fetchone()

    def upsert_user_profile(self, profile: dict) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (id, email, birth_year, gender, school_id, sido_code, sigungu_code)
                VALUES (
                    %(user_id)s, %(email)s, %(birth_year)s, %(gender)s, %(school_id)s,
                    %(sido_code)s, %(sigungu_code)s
                )
                ON CONFLICT (id) DO UPDATE
                SET email=COALESCE(EXCLUDED.email, users.email),
                    birth_year=EXCLUDED.birth_year,
                    gender=EXCLUDED.gender,
                    school_id=EXCLUDED.school_id,
                    sido_code=EXCLUDED.sido_code,
                    sigungu_code=EXCLUDED.sigungu_code,
                    updated_at=NOW()
                """,
                profile,
            )
        self._commit()
