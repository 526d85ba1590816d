"""Monthly AI credit guard backed by the ``ai_quotas`` table."""

from __future__ import annotations

import logging

import asyncpg

from tidings.errors import QuotaExhaustedError

logger = logging.getLogger(__name__)

_PERIOD_SQL = "date_trunc('month', now())::date"


class QuotaGuard:
    """Reserves one credit per capability call.

    A user without a row is seeded with *monthly_credits*. A row whose
    ``period_start`` is before the current month is reset to the full
    allowance first. The decrement itself is a single conditional update, so
    concurrent workers can never push ``credits_left`` below zero.
    """

    def __init__(self, pool: asyncpg.Pool, *, monthly_credits: int) -> None:
        if monthly_credits < 0:
            raise ValueError("monthly_credits must be >= 0")
        self._pool = pool
        self._monthly_credits = monthly_credits

    async def reserve(self, user_id: str) -> int:
        """Take one credit and return how many remain.

        Raises ``QuotaExhaustedError`` when the month's credits are used up.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO ai_quotas (user_id, period_start, credits_left)
                    VALUES ($1, {_PERIOD_SQL}, $2)
                    ON CONFLICT (user_id) DO UPDATE SET
                        period_start = EXCLUDED.period_start,
                        credits_left = EXCLUDED.credits_left,
                        updated_at = now()
                    WHERE ai_quotas.period_start < EXCLUDED.period_start
                    """,
                    user_id,
                    self._monthly_credits,
                )
                remaining = await conn.fetchval(
                    """
                    UPDATE ai_quotas
                    SET credits_left = credits_left - 1, updated_at = now()
                    WHERE user_id = $1 AND credits_left > 0
                    RETURNING credits_left
                    """,
                    user_id,
                )
        if remaining is None:
            logger.info("quota: user=%s has no AI credits left this month", user_id)
            raise QuotaExhaustedError(f"AI credits exhausted for user {user_id}")
        return remaining

    async def refund(self, user_id: str) -> None:
        """Give back a credit reserved for a call that never produced output."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE ai_quotas
                SET credits_left = LEAST(credits_left + 1, $2), updated_at = now()
                WHERE user_id = $1
                """,
                user_id,
                self._monthly_credits,
            )
