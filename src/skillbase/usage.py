"""API usage accounting: per-call token logs, cost estimates and summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Final

from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

# USD per one million tokens.
PRICING: Final[dict[str, dict[str, float]]] = {
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-3-5-sonnet-20241022": {"input": 3.0, "output": 15.0},
    "claude-3-opus-20240229": {"input": 15.0, "output": 75.0},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    "default": {"input": 3.0, "output": 15.0},
}
_CACHE_WRITE_MULTIPLIER: Final[float] = 1.25
_CACHE_READ_MULTIPLIER: Final[float] = 0.1


@dataclass(slots=True)
class UsageInfo:
    input_tokens: int
    output_tokens: int
    model: str
    cache_creation_tokens: int | None = None
    cache_read_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    pricing = PRICING.get(model, PRICING["default"])
    per_token_in = pricing["input"] / 1_000_000
    per_token_out = pricing["output"] / 1_000_000
    uncached = max(0, input_tokens - cache_creation_tokens - cache_read_tokens)
    return (
        uncached * per_token_in
        + cache_creation_tokens * per_token_in * _CACHE_WRITE_MULTIPLIER
        + cache_read_tokens * per_token_in * _CACHE_READ_MULTIPLIER
        + output_tokens * per_token_out
    )


def usage_from_response(response: Any, model: str) -> UsageInfo:
    """Read token counts off an Anthropic ``messages.create`` response."""

    usage = getattr(response, "usage", None)
    return UsageInfo(
        input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
        model=model,
        cache_creation_tokens=getattr(usage, "cache_creation_input_tokens", None),
        cache_read_tokens=getattr(usage, "cache_read_input_tokens", None),
    )


class UsageStore:
    """Persists API usage rows and computes cost summaries."""

    def __init__(self, db_path: Path, *, metrics: MetricsRecorder | None = None) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._metrics = metrics or MetricsRecorder(enabled=False)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    user_email TEXT,
                    feature TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL,
                    output_tokens INTEGER NOT NULL,
                    total_tokens INTEGER NOT NULL,
                    estimated_cost REAL NOT NULL,
                    metadata TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS api_usage_created_idx ON api_usage (created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS api_usage_user_idx ON api_usage (user_id, created_at)")

    def log_usage(
        self,
        *,
        feature: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        user_id: str | None = None,
        user_email: str | None = None,
        cache_creation_tokens: int | None = None,
        cache_read_tokens: int | None = None,
        metadata: dict[str, Any] | None = None,
        created_at: float | None = None,
    ) -> None:
        """Record one API call. Storage errors are logged, never raised."""

        cost = calculate_cost(
            model,
            input_tokens,
            output_tokens,
            cache_creation_tokens or 0,
            cache_read_tokens or 0,
        )
        merged = dict(metadata or {})
        if cache_creation_tokens:
            merged["cache_creation_tokens"] = cache_creation_tokens
        if cache_read_tokens:
            merged["cache_read_tokens"] = cache_read_tokens
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_usage (
                        user_id, user_email, feature, model, input_tokens, output_tokens,
                        total_tokens, estimated_cost, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        user_email,
                        feature,
                        model,
                        input_tokens,
                        output_tokens,
                        input_tokens + output_tokens,
                        cost,
                        json.dumps(merged) if merged else None,
                        created_at if created_at is not None else time.time(),
                    ),
                )
        except sqlite3.Error:
            logger.exception("usage.log.failed feature=%s model=%s", feature, model)
            return
        self._metrics.increment("usage.logged", feature=feature, model=model)
        logger.debug(
            "usage.logged feature=%s model=%s tokens=%s cost=%.6f",
            feature,
            model,
            input_tokens + output_tokens,
            cost,
        )

    def log_info(self, feature: str, usage: UsageInfo, **kwargs: Any) -> None:
        self.log_usage(
            feature=feature,
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            **kwargs,
        )

    def summary(
        self,
        *,
        user_id: str | None = None,
        feature: str | None = None,
        start: float | None = None,
        end: float | None = None,
    ) -> dict[str, Any]:
        where, params = self._filters(user_id=user_id, feature=feature, start=start, end=end)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens,
                       COALESCE(SUM(total_tokens), 0) AS total_tokens,
                       COALESCE(SUM(estimated_cost), 0) AS total_cost,
                       COUNT(*) AS call_count
                FROM api_usage {where}
                """,
                params,
            ).fetchone()
        return {
            "total_input_tokens": row["input_tokens"],
            "total_output_tokens": row["output_tokens"],
            "total_tokens": row["total_tokens"],
            "total_cost": row["total_cost"],
            "call_count": row["call_count"],
        }

    def by_feature(
        self,
        *,
        user_id: str | None = None,
        start: float | None = None,
        end: float | None = None,
    ) -> list[dict[str, Any]]:
        where, params = self._filters(user_id=user_id, start=start, end=end)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT feature,
                       SUM(input_tokens) AS input_tokens,
                       SUM(output_tokens) AS output_tokens,
                       SUM(total_tokens) AS total_tokens,
                       SUM(estimated_cost) AS total_cost,
                       COUNT(*) AS call_count
                FROM api_usage {where}
                GROUP BY feature
                ORDER BY total_cost DESC
                """,
                params,
            ).fetchall()
        return [dict(row) for row in rows]

    def daily(
        self,
        *,
        user_id: str | None = None,
        days: int = 30,
        today: date | None = None,
    ) -> list[dict[str, Any]]:
        """Return one entry per day from ``today - days`` through ``today``, zero-filled."""

        today = today or datetime.now(timezone.utc).date()
        first_day = today - timedelta(days=max(0, days))
        start = datetime.combine(first_day, dt_time.min, tzinfo=timezone.utc).timestamp()
        where, params = self._filters(user_id=user_id, start=start)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT created_at, total_tokens, estimated_cost FROM api_usage {where}
                """,
                params,
            ).fetchall()

        buckets: dict[str, dict[str, Any]] = {}
        current = first_day
        while current <= today:
            key = current.isoformat()
            buckets[key] = {"date": key, "tokens": 0, "cost": 0.0, "calls": 0}
            current += timedelta(days=1)
        for row in rows:
            key = datetime.fromtimestamp(row["created_at"], tz=timezone.utc).date().isoformat()
            bucket = buckets.get(key)
            if bucket is None:
                continue
            bucket["tokens"] += row["total_tokens"]
            bucket["cost"] += row["estimated_cost"]
            bucket["calls"] += 1
        return list(buckets.values())

    def recent(self, *, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        where, params = self._filters(user_id=user_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM api_usage {where} ORDER BY created_at DESC LIMIT ?",
                [*params, max(1, min(limit, 200))],
            ).fetchall()
        results = []
        for row in rows:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else None
            results.append(data)
        return results

    @staticmethod
    def _filters(
        *,
        user_id: str | None = None,
        feature: str | None = None,
        start: float | None = None,
        end: float | None = None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if feature:
            clauses.append("feature = ?")
            params.append(feature)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params


__all__ = [
    "PRICING",
    "UsageInfo",
    "UsageStore",
    "calculate_cost",
    "usage_from_response",
]
