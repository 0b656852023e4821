from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from models import (
    AttributionClick,
    Commission,
    Creator,
    CreatorCounters,
    Member,
    MemberCounters,
    Notification,
)


CREATOR_COLUMNS = """
    id, company_id, name, product_url,
    total_revenue, monthly_revenue, total_referrals
"""

MEMBER_COLUMNS = """
    id, creator_id, user_id, membership_id, referral_code, referred_by,
    member_origin, signup_fingerprint, signup_ip_hash, created_at,
    total_referred, monthly_referred, lifetime_earnings, monthly_earnings
"""

CLICK_COLUMNS = """
    id, referral_code, referrer_id, fingerprint, ip_hash, user_agent,
    created_at, expires_at, converted, converted_at, converted_member_id
"""

COMMISSION_COLUMNS = """
    id, external_payment_id, sale_amount, member_share, creator_share,
    platform_share, status, member_id, referee_id, creator_id, created_at,
    paid_at, fraud_score, fraud_reasons, flagged_for_review,
    payment_confirmed, reversal_reason
"""

NOTIFICATION_COLUMNS = "id, kind, payload, created_at, sent_at, claimed_at"


class PostgresTransaction:
    """
    every read/write the ledger core needs, as raw SQL over one
    psycopg connection. the caller owns commit/rollback.
    """

    def __init__(self, conn: Connection):
        self.conn = conn

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """nested block that rolls back on its own without aborting the outer transaction."""
        with self.conn.transaction():
            yield

    def _one(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _all(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _rowcount(self, sql: str, params: tuple) -> int:
        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    # ---------
    # creators
    # ---------

    def insert_creator(self, company_id: str, name: str, product_url: str) -> Creator:
        try:
            row = self._one(
                f"""
                INSERT INTO creators (company_id, name, product_url)
                VALUES (%s, %s, %s)
                RETURNING {CREATOR_COLUMNS}
                """,
                (company_id, name, product_url),
            )
        except UniqueViolation:
            raise ValueError(f"creator for company {company_id} already exists")
        return Creator(**row)

    def get_creator(self, creator_id: int) -> Optional[Creator]:
        row = self._one(
            f"SELECT {CREATOR_COLUMNS} FROM creators WHERE id = %s",
            (creator_id,),
        )
        return Creator(**row) if row else None

    def get_creator_by_company(self, company_id: str) -> Optional[Creator]:
        row = self._one(
            f"SELECT {CREATOR_COLUMNS} FROM creators WHERE company_id = %s",
            (company_id,),
        )
        return Creator(**row) if row else None

    def list_creator_ids(self) -> List[int]:
        with self.conn.cursor() as cur:
            cur.execute("SELECT id FROM creators ORDER BY id")
            return [r[0] for r in cur.fetchall()]

    def add_creator_revenue(self, creator_id: int, amount: Decimal, include_monthly: bool) -> bool:
        """
        apply a revenue delta floored at zero.
        returns True when the floor had to be applied.
        """
        row = self._one(
            """
            WITH before AS (
                SELECT total_revenue, monthly_revenue
                FROM creators WHERE id = %(id)s FOR UPDATE
            )
            UPDATE creators c
            SET total_revenue = GREATEST(0, c.total_revenue + %(amount)s),
                monthly_revenue = CASE WHEN %(monthly)s
                    THEN GREATEST(0, c.monthly_revenue + %(amount)s)
                    ELSE c.monthly_revenue END
            FROM before b
            WHERE c.id = %(id)s
            RETURNING (b.total_revenue + %(amount)s < 0)
                   OR (%(monthly)s AND b.monthly_revenue + %(amount)s < 0) AS floored
            """,
            {"id": creator_id, "amount": amount, "monthly": include_monthly},
        )
        if row is None:
            raise ValueError(f"Creator {creator_id} not found")
        return bool(row["floored"])

    def increment_creator_referrals(self, creator_id: int) -> None:
        self._rowcount(
            "UPDATE creators SET total_referrals = total_referrals + 1 WHERE id = %s",
            (creator_id,),
        )

    def creator_ledger_totals(self, creator_id: int, since: datetime) -> CreatorCounters:
        revenue = self._one(
            """
            SELECT
                COALESCE(SUM(creator_share), 0) AS total_revenue,
                COALESCE(SUM(creator_share) FILTER (WHERE paid_at >= %s), 0) AS monthly_revenue
            FROM commissions
            WHERE creator_id = %s AND status = 'paid'
            """,
            (since, creator_id),
        )
        referrals = self._one(
            """
            SELECT COUNT(*) AS total_referrals
            FROM members
            WHERE creator_id = %s AND member_origin = 'referred'
            """,
            (creator_id,),
        )
        return CreatorCounters(
            total_revenue=revenue["total_revenue"],
            monthly_revenue=revenue["monthly_revenue"],
            total_referrals=referrals["total_referrals"],
        )

    def update_creator_counters_if(
        self, creator_id: int, expected: CreatorCounters, new: CreatorCounters
    ) -> bool:
        count = self._rowcount(
            """
            UPDATE creators
            SET total_revenue = %s, monthly_revenue = %s, total_referrals = %s
            WHERE id = %s
              AND total_revenue = %s
              AND monthly_revenue = %s
              AND total_referrals = %s
            """,
            (
                new.total_revenue,
                new.monthly_revenue,
                new.total_referrals,
                creator_id,
                expected.total_revenue,
                expected.monthly_revenue,
                expected.total_referrals,
            ),
        )
        return count == 1

    # ---------
    # members
    # ---------

    def referral_code_exists(self, code: str) -> bool:
        with self.conn.cursor() as cur:
            cur.execute("SELECT 1 FROM members WHERE referral_code = %s", (code,))
            return cur.fetchone() is not None

    def insert_member(
        self,
        creator_id: int,
        user_id: str,
        membership_id: str,
        referral_code: str,
        fingerprint: Optional[str],
        ip_hash: Optional[str],
        now: datetime,
    ) -> Member:
        try:
            row = self._one(
                f"""
                INSERT INTO members
                    (creator_id, user_id, membership_id, referral_code,
                     signup_fingerprint, signup_ip_hash, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {MEMBER_COLUMNS}
                """,
                (creator_id, user_id, membership_id, referral_code, fingerprint, ip_hash, now),
            )
        except UniqueViolation:
            # membership collision (or extremely unlikely referral_code collision)
            raise ValueError(f"membership {membership_id} already registered")
        return Member(**row)

    def get_member(self, member_id: int) -> Optional[Member]:
        row = self._one(f"SELECT {MEMBER_COLUMNS} FROM members WHERE id = %s", (member_id,))
        return Member(**row) if row else None

    def get_member_by_code(self, code: str) -> Optional[Member]:
        row = self._one(
            f"SELECT {MEMBER_COLUMNS} FROM members WHERE referral_code = %s",
            (code,),
        )
        return Member(**row) if row else None

    def get_member_by_membership(self, membership_id: str) -> Optional[Member]:
        row = self._one(
            f"SELECT {MEMBER_COLUMNS} FROM members WHERE membership_id = %s",
            (membership_id,),
        )
        return Member(**row) if row else None

    def set_member_referred(self, member_id: int, referred_by: str) -> None:
        count = self._rowcount(
            """
            UPDATE members
            SET referred_by = %s, member_origin = 'referred'
            WHERE id = %s
            """,
            (referred_by, member_id),
        )
        if count != 1:
            raise ValueError(f"Failed to set referrer for member {member_id}")

    def increment_referral_counts(self, member_id: int) -> None:
        self._rowcount(
            """
            UPDATE members
            SET total_referred = total_referred + 1,
                monthly_referred = monthly_referred + 1
            WHERE id = %s
            """,
            (member_id,),
        )

    def add_member_earnings(self, member_id: int, amount: Decimal, include_monthly: bool) -> bool:
        """
        apply an earnings delta floored at zero.
        returns True when the floor had to be applied.
        """
        row = self._one(
            """
            WITH before AS (
                SELECT lifetime_earnings, monthly_earnings
                FROM members WHERE id = %(id)s FOR UPDATE
            )
            UPDATE members m
            SET lifetime_earnings = GREATEST(0, m.lifetime_earnings + %(amount)s),
                monthly_earnings = CASE WHEN %(monthly)s
                    THEN GREATEST(0, m.monthly_earnings + %(amount)s)
                    ELSE m.monthly_earnings END
            FROM before b
            WHERE m.id = %(id)s
            RETURNING (b.lifetime_earnings + %(amount)s < 0)
                   OR (%(monthly)s AND b.monthly_earnings + %(amount)s < 0) AS floored
            """,
            {"id": member_id, "amount": amount, "monthly": include_monthly},
        )
        if row is None:
            raise ValueError(f"Member {member_id} not found")
        return bool(row["floored"])

    def list_member_ids(self) -> List[int]:
        with self.conn.cursor() as cur:
            cur.execute("SELECT id FROM members ORDER BY id")
            return [r[0] for r in cur.fetchall()]

    def member_ledger_totals(self, member_id: int, referral_code: str, since: datetime) -> MemberCounters:
        earnings = self._one(
            """
            SELECT
                COALESCE(SUM(member_share), 0) AS lifetime_earnings,
                COALESCE(SUM(member_share) FILTER (WHERE paid_at >= %s), 0) AS monthly_earnings
            FROM commissions
            WHERE member_id = %s AND status = 'paid'
            """,
            (since, member_id),
        )
        referred = self._one(
            """
            SELECT
                COUNT(*) AS total_referred,
                COUNT(*) FILTER (WHERE created_at >= %s) AS monthly_referred
            FROM members
            WHERE referred_by = %s
            """,
            (since, referral_code),
        )
        return MemberCounters(
            total_referred=referred["total_referred"],
            monthly_referred=referred["monthly_referred"],
            lifetime_earnings=earnings["lifetime_earnings"],
            monthly_earnings=earnings["monthly_earnings"],
        )

    def update_member_counters_if(
        self, member_id: int, expected: MemberCounters, new: MemberCounters
    ) -> bool:
        count = self._rowcount(
            """
            UPDATE members
            SET total_referred = %s,
                monthly_referred = %s,
                lifetime_earnings = %s,
                monthly_earnings = %s
            WHERE id = %s
              AND total_referred = %s
              AND monthly_referred = %s
              AND lifetime_earnings = %s
              AND monthly_earnings = %s
            """,
            (
                new.total_referred,
                new.monthly_referred,
                new.lifetime_earnings,
                new.monthly_earnings,
                member_id,
                expected.total_referred,
                expected.monthly_referred,
                expected.lifetime_earnings,
                expected.monthly_earnings,
            ),
        )
        return count == 1

    def members_sharing_fingerprint(self, fingerprint: str, exclude_ids: Iterable[int]) -> List[int]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT id FROM members
                WHERE signup_fingerprint = %s AND NOT (id = ANY(%s))
                ORDER BY id
                """,
                (fingerprint, list(exclude_ids)),
            )
            return [r[0] for r in cur.fetchall()]

    # ---------
    # attribution clicks
    # ---------

    def insert_click(
        self,
        referral_code: str,
        referrer_id: int,
        fingerprint: str,
        ip_hash: str,
        user_agent: Optional[str],
        created_at: datetime,
        expires_at: datetime,
    ) -> AttributionClick:
        row = self._one(
            f"""
            INSERT INTO attribution_clicks
                (referral_code, referrer_id, fingerprint, ip_hash, user_agent,
                 created_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {CLICK_COLUMNS}
            """,
            (referral_code, referrer_id, fingerprint, ip_hash, user_agent, created_at, expires_at),
        )
        return AttributionClick(**row)

    def get_click(self, click_id: int) -> Optional[AttributionClick]:
        row = self._one(
            f"SELECT {CLICK_COLUMNS} FROM attribution_clicks WHERE id = %s",
            (click_id,),
        )
        return AttributionClick(**row) if row else None

    def find_active_click(
        self,
        now: datetime,
        fingerprint: Optional[str] = None,
        ip_hash: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Optional[AttributionClick]:
        params: List[Any] = [now]
        where_clauses = ["converted = FALSE", "expires_at > %s"]

        if fingerprint is not None:
            where_clauses.append("fingerprint = %s")
            params.append(fingerprint)
        if ip_hash is not None:
            where_clauses.append("ip_hash = %s")
            params.append(ip_hash)
        if referral_code is not None:
            where_clauses.append("referral_code = %s")
            params.append(referral_code)

        where_sql = " AND ".join(where_clauses)
        row = self._one(
            f"""
            SELECT {CLICK_COLUMNS}
            FROM attribution_clicks
            WHERE {where_sql}
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            tuple(params),
        )
        return AttributionClick(**row) if row else None

    def mark_click_converted(self, click_id: int, member_id: int, now: datetime) -> bool:
        """compare-and-swap: only flips a click that is still unconverted."""
        count = self._rowcount(
            """
            UPDATE attribution_clicks
            SET converted = TRUE, converted_at = %s, converted_member_id = %s
            WHERE id = %s AND converted = FALSE
            """,
            (now, member_id, click_id),
        )
        return count == 1

    def get_converting_click(self, member_id: int) -> Optional[AttributionClick]:
        row = self._one(
            f"""
            SELECT {CLICK_COLUMNS} FROM attribution_clicks
            WHERE converted_member_id = %s
            ORDER BY id DESC
            LIMIT 1
            """,
            (member_id,),
        )
        return AttributionClick(**row) if row else None

    def count_clicks_since(
        self,
        referral_code: str,
        since: datetime,
        fingerprint: Optional[str] = None,
    ) -> int:
        sql = "SELECT COUNT(*) FROM attribution_clicks WHERE referral_code = %s AND created_at >= %s"
        params: List[Any] = [referral_code, since]
        if fingerprint is not None:
            sql += " AND fingerprint = %s"
            params.append(fingerprint)

        with self.conn.cursor() as cur:
            cur.execute(sql, tuple(params))
            return cur.fetchone()[0]

    # ---------
    # commissions
    # ---------

    def insert_commission_if_absent(self, **fields: Any) -> Tuple[Commission, bool]:
        """
        insert-or-return-existing keyed on external_payment_id.
        the unique constraint makes this safe under concurrent duplicate delivery.
        returns (commission, created).
        """
        columns = list(fields)
        placeholders = ", ".join(f"%({c})s" for c in columns)
        row = self._one(
            f"""
            INSERT INTO commissions ({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT (external_payment_id) DO NOTHING
            RETURNING {COMMISSION_COLUMNS}
            """,
            fields,
        )
        if row is not None:
            return Commission(**row), True

        existing = self.get_commission_by_payment(fields["external_payment_id"])
        if existing is None:
            raise RuntimeError(
                f"commission {fields['external_payment_id']} conflicted but could not be read back"
            )
        return existing, False

    def get_commission(self, commission_id: int) -> Optional[Commission]:
        row = self._one(
            f"SELECT {COMMISSION_COLUMNS} FROM commissions WHERE id = %s",
            (commission_id,),
        )
        return Commission(**row) if row else None

    def get_commission_by_payment(self, external_payment_id: str) -> Optional[Commission]:
        row = self._one(
            f"SELECT {COMMISSION_COLUMNS} FROM commissions WHERE external_payment_id = %s",
            (external_payment_id,),
        )
        return Commission(**row) if row else None

    def transition_commission(
        self,
        commission_id: int,
        from_statuses: Iterable[str],
        to_status: str,
        paid_at: Optional[datetime] = None,
        reversal_reason: Optional[str] = None,
    ) -> Optional[Commission]:
        """conditional status update; None when the row was not in from_statuses."""
        row = self._one(
            f"""
            UPDATE commissions
            SET status = %s,
                paid_at = COALESCE(%s, paid_at),
                reversal_reason = COALESCE(%s, reversal_reason)
            WHERE id = %s AND status = ANY(%s)
            RETURNING {COMMISSION_COLUMNS}
            """,
            (to_status, paid_at, reversal_reason, commission_id, list(from_statuses)),
        )
        return Commission(**row) if row else None

    def set_payment_confirmed(self, commission_id: int) -> None:
        self._rowcount(
            "UPDATE commissions SET payment_confirmed = TRUE WHERE id = %s",
            (commission_id,),
        )

    def list_commissions(
        self,
        member_id: Optional[int] = None,
        creator_id: Optional[int] = None,
        referee_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        flagged_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Commission]:
        params: List[Any] = []
        where_clauses = ["TRUE"]

        if member_id is not None:
            where_clauses.append("member_id = %s")
            params.append(member_id)
        if creator_id is not None:
            where_clauses.append("creator_id = %s")
            params.append(creator_id)
        if referee_id is not None:
            where_clauses.append("referee_id = %s")
            params.append(referee_id)
        if statuses is not None:
            where_clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        if flagged_only:
            where_clauses.append("flagged_for_review = TRUE")

        sql = f"""
            SELECT {COMMISSION_COLUMNS}
            FROM commissions
            WHERE {" AND ".join(where_clauses)}
            ORDER BY created_at DESC, id DESC
        """
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        return [Commission(**row) for row in self._all(sql, tuple(params))]

    # ---------
    # outbox
    # ---------

    def enqueue_notification(self, kind: str, payload: dict, now: datetime) -> Notification:
        row = self._one(
            f"""
            INSERT INTO notification_outbox (kind, payload, created_at)
            VALUES (%s, %s, %s)
            RETURNING {NOTIFICATION_COLUMNS}
            """,
            (kind, Jsonb(payload), now),
        )
        return Notification(**row)

    def pending_notifications(self, limit: int) -> List[Notification]:
        rows = self._all(
            f"""
            SELECT {NOTIFICATION_COLUMNS}
            FROM notification_outbox
            WHERE sent_at IS NULL
            ORDER BY id
            LIMIT %s
            """,
            (limit,),
        )
        return [Notification(**row) for row in rows]

    def claim_notifications(self, limit: int, now: datetime, stale_before: datetime) -> List[Notification]:
        """
        stamp claimed_at on up to `limit` unsent rows nobody else holds.
        SKIP LOCKED keeps two drainers from claiming the same row; the row
        locks end with this transaction, claimed_at outlives it.
        """
        rows = self._all(
            f"""
            UPDATE notification_outbox
            SET claimed_at = %s
            WHERE id IN (
                SELECT id
                FROM notification_outbox
                WHERE sent_at IS NULL
                  AND (claimed_at IS NULL OR claimed_at < %s)
                ORDER BY id
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {NOTIFICATION_COLUMNS}
            """,
            (now, stale_before, limit),
        )
        return sorted((Notification(**row) for row in rows), key=lambda n: n.id)

    def release_notification(self, notification_id: int) -> None:
        self._rowcount(
            "UPDATE notification_outbox SET claimed_at = NULL WHERE id = %s AND sent_at IS NULL",
            (notification_id,),
        )

    def mark_notification_sent(self, notification_id: int, now: datetime) -> None:
        self._rowcount(
            "UPDATE notification_outbox SET sent_at = %s, claimed_at = NULL WHERE id = %s",
            (now, notification_id),
        )
