import logging
import math
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from . import storage
from .errors import RateLimitUnavailable


ANONYMOUS_WINDOW_SECONDS = 60 * 60
DAILY_WINDOW_SECONDS = 24 * 60 * 60
HOURLY_WINDOW_SECONDS = 60 * 60

logger = logging.getLogger("imghost.ratelimit")


@dataclass(frozen=True)
class RateRule:
    key: str
    limit: int
    window_seconds: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0
    key: str = ""
    degraded: bool = False

    @property
    def reset_iso(self) -> str:
        return (
            datetime.fromtimestamp(self.reset_at, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )


def _fail_open_enabled() -> bool:
    try:
        return bool(storage.get_config().get("rate_limit_fail_open", True))
    except (OSError, ValueError):
        return True


def check_many(
    rules: Iterable[RateRule],
    now: Optional[float] = None,
    *,
    fail_open: Optional[bool] = None,
) -> RateDecision:
    """Count one request against every rule, or against none of them.

    All counters are read and written in a single ``BEGIN IMMEDIATE``
    transaction, so concurrent callers serialise on the database and a
    rejected request never consumes quota from any rule.
    """

    rules = list(rules)
    if not rules:
        raise ValueError("at least one rate rule is required")
    now = time.time() if now is None else float(now)

    try:
        with storage.get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            evaluated = []
            for rule in rules:
                row = conn.execute(
                    "SELECT count, reset_at FROM rate_counters WHERE key = ?",
                    (rule.key,),
                ).fetchone()
                if row is None or now >= row["reset_at"]:
                    evaluated.append((rule, 0, now + rule.window_seconds))
                else:
                    evaluated.append((rule, int(row["count"]), float(row["reset_at"])))

            for rule, count, reset_at in evaluated:
                if count >= rule.limit:
                    conn.rollback()
                    retry_after = max(1, math.ceil(reset_at - now))
                    logger.info(
                        "rate_limit_exceeded key=%s limit=%d retry_after=%d",
                        rule.key,
                        rule.limit,
                        retry_after,
                    )
                    return RateDecision(
                        allowed=False,
                        limit=rule.limit,
                        remaining=0,
                        reset_at=reset_at,
                        retry_after=retry_after,
                        key=rule.key,
                    )

            tightest: Optional[RateDecision] = None
            for rule, count, reset_at in evaluated:
                conn.execute(
                    """
                    INSERT INTO rate_counters (key, count, reset_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (key) DO UPDATE SET
                        count = excluded.count,
                        reset_at = excluded.reset_at
                    """,
                    (rule.key, count + 1, reset_at),
                )
                decision = RateDecision(
                    allowed=True,
                    limit=rule.limit,
                    remaining=max(0, rule.limit - (count + 1)),
                    reset_at=reset_at,
                    key=rule.key,
                )
                if tightest is None or decision.remaining < tightest.remaining:
                    tightest = decision
            conn.commit()
            return tightest
    except (sqlite3.Error, OSError) as error:
        if fail_open is None:
            fail_open = _fail_open_enabled()
        logger.error(
            "rate_limit_store_unavailable keys=%s fail_open=%s error=%s",
            ",".join(rule.key for rule in rules),
            fail_open,
            error,
        )
        if not fail_open:
            raise RateLimitUnavailable("Rate limiting is temporarily unavailable") from error
        first = rules[0]
        return RateDecision(
            allowed=True,
            limit=first.limit,
            remaining=first.limit,
            reset_at=now + first.window_seconds,
            key=first.key,
            degraded=True,
        )


def check_and_increment(
    key: str,
    limit: int,
    window_seconds: float,
    now: Optional[float] = None,
    *,
    fail_open: Optional[bool] = None,
) -> RateDecision:
    """Fixed-window check for a single counter."""
    return check_many([RateRule(key, int(limit), window_seconds)], now, fail_open=fail_open)


def anonymous_rule(ip: str, config: Optional[Dict[str, object]] = None) -> RateRule:
    config = config if config is not None else storage.get_config()
    return RateRule(
        f"anon-hourly:{ip}",
        storage.config_int(config, "anonymous_hourly_limit"),
        ANONYMOUS_WINDOW_SECONDS,
    )


def authenticated_rules(owner) -> List[RateRule]:
    return [
        RateRule(f"auth-daily:{owner.id}", int(owner.daily_limit), DAILY_WINDOW_SECONDS),
        RateRule(f"auth-hourly:{owner.id}", int(owner.hourly_limit), HOURLY_WINDOW_SECONDS),
    ]


def get_counter(key: str) -> Optional[Dict[str, float]]:
    with storage.get_db() as conn:
        row = conn.execute(
            "SELECT count, reset_at FROM rate_counters WHERE key = ?", (key,)
        ).fetchone()
    if row is None:
        return None
    return {"count": int(row["count"]), "reset_at": float(row["reset_at"])}


def rate_limit_headers(decision: RateDecision) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": decision.reset_iso,
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def apply_headers(response, decision: Optional[RateDecision]):
    if decision is None:
        return response
    for name, value in rate_limit_headers(decision).items():
        response.headers[name] = value
    return response


def purge_expired_counters(now: Optional[float] = None) -> int:
    """Delete counters whose window has already closed."""

    now = time.time() if now is None else now
    with storage.get_db() as conn:
        cursor = conn.execute("DELETE FROM rate_counters WHERE reset_at <= ?", (now,))
        conn.commit()
    if cursor.rowcount:
        logger.info("rate_counters_purged count=%d", cursor.rowcount)
    return cursor.rowcount
