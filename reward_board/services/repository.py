from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from reward_board.core.config import get_settings
from reward_board.schemas.listings import PENDING_REVIEW, TERMINAL_STATUSES
from reward_board.schemas.moderation import LISTING_RESOURCE_TYPE, LISTING_REVIEW_JOB_KIND


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


MODERATION_ACTIONS = {"APPROVE", "ADJUST", "REJECT"}

_LISTING_COLUMNS = """
  id::text as id,
  title,
  description,
  category,
  amount_minor_units,
  deadline,
  scope::text as scope,
  state,
  municipality_code,
  latitude,
  longitude,
  radius_meters,
  status::text as status,
  risk_score,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id::text as id,
  channel,
  kind,
  target_type,
  target_id::text as target_id,
  inputs_json,
  status::text as status,
  attempt,
  max_attempts,
  next_run_at,
  error_json
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # listings

    async def create_listing_and_enqueue_review(self, *, listing: dict[str, Any], channel: str) -> dict[str, Any]:
        """Insert a PENDING_REVIEW listing and its review job in one transaction.

        The job row is only visible to workers once the listing is committed, so a
        listing can never exist without its review job.
        """
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into listings (
                      title,
                      description,
                      category,
                      amount_minor_units,
                      deadline,
                      scope,
                      state,
                      municipality_code,
                      latitude,
                      longitude,
                      radius_meters,
                      status
                    )
                    values ($1, $2, $3, $4, $5, $6::listing_scope, $7, $8, $9, $10, $11, 'PENDING_REVIEW')
                    returning {_LISTING_COLUMNS}
                    """,
                    listing["title"],
                    listing["description"],
                    listing["category"],
                    listing["amount_minor_units"],
                    listing["deadline"],
                    listing["scope"],
                    listing.get("state"),
                    listing.get("municipality_code"),
                    listing.get("latitude"),
                    listing.get("longitude"),
                    listing.get("radius_meters"),
                )
                await conn.execute(
                    """
                    insert into jobs (channel, kind, target_type, target_id, inputs_json, max_attempts)
                    values ($1, $2, $3, $4::uuid, $5::jsonb, $6)
                    """,
                    channel,
                    LISTING_REVIEW_JOB_KIND,
                    LISTING_RESOURCE_TYPE,
                    row["id"],
                    json.dumps({"listing_id": row["id"]}),
                    self.job_max_attempts,
                )
                return self._listing_row_to_dict(row)

    async def get_listing(self, listing_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_LISTING_COLUMNS}
                from listings
                where id = $1::uuid
                """,
                listing_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._listing_row_to_dict(row) if row else None

    async def transition_listing(
        self,
        listing_id: str,
        *,
        from_status: str,
        to_status: str,
        risk_score: int,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._transition_listing(
                conn=conn,
                listing_id=listing_id,
                from_status=from_status,
                to_status=to_status,
                risk_score=risk_score,
            )

    async def list_published_listings(
        self,
        *,
        limit: int,
        offset: int,
        category: str | None = None,
        scope: str | None = None,
        state: str | None = None,
        municipality_code: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        conditions: list[str] = ["l.status = 'PUBLISHED'"]
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        normalized_category = self._coerce_text(category)
        if normalized_category:
            conditions.append(f"l.category ilike {bind(f'%{normalized_category}%')}")
        if scope:
            conditions.append(f"l.scope = {bind(scope)}::listing_scope")

        normalized_state = self._coerce_text(state)
        if normalized_state:
            conditions.append(f"l.state = {bind(normalized_state.upper())}")

        normalized_municipality = self._coerce_text(municipality_code)
        if normalized_municipality:
            conditions.append(f"l.municipality_code = {bind(normalized_municipality)}")

        where_sql = " and ".join(conditions)
        limit_token = bind(limit)
        offset_token = bind(offset)

        rows = await pool.fetch(
            f"""
            select {_LISTING_COLUMNS}
            from listings l
            where {where_sql}
            order by l.created_at desc, l.id asc
            limit {limit_token}
            offset {offset_token}
            """,
            *params,
        )
        return [self._listing_row_to_dict(row) for row in rows]

    # audit ledger

    async def append_moderation_event(self, listing_id: str, *, action: str, reason: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._append_moderation_event(conn=conn, listing_id=listing_id, action=action, reason=reason)

    async def list_moderation_events(self, listing_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              listing_id::text as listing_id,
              resource_type,
              resource_id::text as resource_id,
              action::text as action,
              reason,
              created_at
            from moderation_events
            where listing_id = $1::uuid
            order by created_at asc, id asc
            """,
            listing_id,
        )
        return [dict(row) for row in rows]

    async def apply_moderation_decision(
        self,
        listing_id: str,
        *,
        to_status: str | None,
        risk_score: int,
        action: str,
        reason: str,
    ) -> bool:
        """Apply a worker decision and its ledger event atomically.

        Returns False without writing anything when the listing is no longer
        PENDING_REVIEW (another delivery of the same job won the transition).
        """
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                if to_status is None:
                    current_status = await conn.fetchval(
                        """
                        select status::text
                        from listings
                        where id = $1::uuid
                        for update
                        """,
                        listing_id,
                    )
                    if current_status != PENDING_REVIEW:
                        return False
                else:
                    applied = await self._transition_listing(
                        conn=conn,
                        listing_id=listing_id,
                        from_status=PENDING_REVIEW,
                        to_status=to_status,
                        risk_score=risk_score,
                    )
                    if not applied:
                        return False

                await self._append_moderation_event(conn=conn, listing_id=listing_id, action=action, reason=reason)
                return True

    # job queue

    async def claim_jobs(
        self,
        *,
        channel: str,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with next_jobs as (
                      select id as job_id
                      from jobs
                      where channel = $1
                        and status = 'queued'
                        and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $2
                      for update skip locked
                    )
                    update jobs
                    set
                      status = 'claimed',
                      locked_by = $3,
                      locked_at = now(),
                      lease_expires_at = now() + ($4::int * interval '1 second'),
                      attempt = jobs.attempt + 1,
                      updated_at = now()
                    from next_jobs n
                    where jobs.id = n.job_id
                    returning {_JOB_COLUMNS}
                    """,
                    channel,
                    bounded_limit,
                    worker_id,
                    lease_seconds,
                )
                return [self._job_row_to_dict(row) for row in rows]

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._lock_claimed_job(conn=conn, job_id=job_id, worker_id=worker_id)
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'done',
                          result_json = $2::jsonb,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        json.dumps(result_json) if result_json is not None else None,
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def fail_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        error_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Reschedule a failed job with exponential backoff, or dead-letter it once
        its attempts are exhausted."""
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    claimed = await self._lock_claimed_job(conn=conn, job_id=job_id, worker_id=worker_id)
                    attempt = int(claimed["attempt"])
                    max_attempts = int(claimed["max_attempts"])

                    next_run_at: datetime | None = None
                    if attempt >= max_attempts:
                        resolved_status = "dead_letter"
                    else:
                        retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)
                        next_run_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds)
                        resolved_status = "queued"

                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2::job_status,
                          error_json = $3::jsonb,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          next_run_at = coalesce($4::timestamptz, next_run_at),
                          updated_at = now()
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                        resolved_status,
                        json.dumps(error_json) if error_json is not None else None,
                        next_run_at,
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_expired_jobs(self, *, channel: str, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from jobs
                      where channel = $1
                        and status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $2
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = case when j.attempt >= j.max_attempts then 'dead_letter'::job_status else 'queued'::job_status end,
                      error_json = case
                        when j.attempt >= j.max_attempts then jsonb_build_object('error', 'lease expired')
                        else j.error_json
                      end,
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    channel,
                    bounded_limit,
                )
                return len(rows)

    async def enqueue_missing_reviews(self, *, channel: str, limit: int, grace_seconds: int) -> int:
        """Enqueue a review for PENDING_REVIEW listings with no job and no ledger event."""
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with missing as (
                      select l.id
                      from listings l
                      where l.status = 'PENDING_REVIEW'
                        and l.created_at <= now() - ($3::int * interval '1 second')
                        and not exists (
                          select 1
                          from jobs j
                          where j.kind = $2
                            and j.target_type = 'listing'
                            and j.target_id = l.id
                        )
                        and not exists (
                          select 1
                          from moderation_events e
                          where e.listing_id = l.id
                        )
                      order by l.created_at asc
                      limit $4
                      for update skip locked
                    )
                    insert into jobs (channel, kind, target_type, target_id, inputs_json, max_attempts)
                    select $1, $2, 'listing', m.id, jsonb_build_object('listing_id', m.id::text), $5
                    from missing m
                    returning id::text as id
                    """,
                    channel,
                    LISTING_REVIEW_JOB_KIND,
                    max(0, grace_seconds),
                    bounded_limit,
                    self.job_max_attempts,
                )
                return len(rows)

    async def list_dead_letter_jobs(self, *, channel: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where channel = $1 and status = 'dead_letter'
            order by updated_at desc, id asc
            limit $2
            """,
            channel,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def requeue_dead_letter_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchval(
                        "select status::text from jobs where id = $1::uuid for update",
                        job_id,
                    )
                    if current is None:
                        raise RepositoryNotFoundError("job not found")
                    if current != "dead_letter":
                        raise RepositoryConflictError("job is not dead-lettered")

                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'queued',
                          attempt = 0,
                          next_run_at = now(),
                          updated_at = now()
                        where id = $1::uuid
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def _transition_listing(
        self,
        *,
        conn: asyncpg.Connection,
        listing_id: str,
        from_status: str,
        to_status: str,
        risk_score: int,
    ) -> bool:
        if to_status not in TERMINAL_STATUSES:
            raise RepositoryConflictError(f"invalid listing status transition: {from_status} -> {to_status}")

        row = await conn.fetchrow(
            """
            update listings
            set
              status = $3::listing_status,
              risk_score = $4,
              updated_at = now()
            where id = $1::uuid and status = $2::listing_status
            returning id::text as id
            """,
            listing_id,
            from_status,
            to_status,
            risk_score,
        )
        return row is not None

    async def _append_moderation_event(
        self,
        *,
        conn: asyncpg.Connection,
        listing_id: str,
        action: str,
        reason: str,
    ) -> None:
        if action not in MODERATION_ACTIONS:
            raise RepositoryValidationError(f"unknown moderation action: {action}")

        await conn.execute(
            """
            insert into moderation_events (listing_id, resource_type, resource_id, action, reason)
            values ($1::uuid, $2, $1::uuid, $3::moderation_action, $4)
            """,
            listing_id,
            LISTING_RESOURCE_TYPE,
            action,
            reason,
        )

    async def _lock_claimed_job(self, *, conn: asyncpg.Connection, job_id: str, worker_id: str) -> asyncpg.Record:
        claimed = await conn.fetchrow(
            """
            select
              id::text as id,
              status::text as status,
              locked_by,
              attempt,
              max_attempts
            from jobs
            where id = $1::uuid
            for update
            """,
            job_id,
        )
        if not claimed:
            raise RepositoryNotFoundError("job not found")
        if claimed["status"] != "claimed":
            raise RepositoryConflictError("job is not in claimed state")
        if claimed["locked_by"] != worker_id:
            raise RepositoryConflictError("job claimed by another worker")
        return claimed

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _listing_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "title": row["title"],
            "description": row["description"],
            "category": row["category"],
            "amount_minor_units": int(row["amount_minor_units"]),
            "deadline": row["deadline"],
            "scope": row["scope"],
            "state": row["state"],
            "municipality_code": row["municipality_code"],
            "latitude": row["latitude"],
            "longitude": row["longitude"],
            "radius_meters": row["radius_meters"],
            "status": row["status"],
            "risk_score": row["risk_score"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        inputs_json = row["inputs_json"]
        if isinstance(inputs_json, str):
            try:
                inputs_json = json.loads(inputs_json)
            except json.JSONDecodeError:
                inputs_json = {}
        if inputs_json is None:
            inputs_json = {}

        error_json = row["error_json"]
        if isinstance(error_json, str):
            try:
                error_json = json.loads(error_json)
            except json.JSONDecodeError:
                error_json = {"error": error_json}

        return {
            "id": row["id"],
            "channel": row["channel"],
            "kind": row["kind"],
            "target_type": row["target_type"],
            "target_id": row["target_id"],
            "inputs_json": inputs_json,
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "max_attempts": int(row["max_attempts"]),
            "next_run_at": row["next_run_at"],
            "error_json": error_json,
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return None


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
