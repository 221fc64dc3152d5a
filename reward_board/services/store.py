from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from reward_board.schemas.listings import PENDING_REVIEW, PUBLISHED, TERMINAL_STATUSES
from reward_board.schemas.moderation import LISTING_RESOURCE_TYPE, LISTING_REVIEW_JOB_KIND
from reward_board.services.repository import (
    MODERATION_ACTIONS,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


class InMemoryRepository:
    """Process-local stand-in for :class:`PostgresRepository`.

    Every mutating method runs under one lock, which gives the same atomicity as
    a database transaction. Used by the test suite and single-process demos.
    """

    def __init__(
        self,
        *,
        job_max_attempts: int = 3,
        job_retry_base_seconds: int = 0,
        job_retry_max_seconds: int = 300,
    ) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self.listings: dict[str, dict[str, Any]] = {}
        self.moderation_events: list[dict[str, Any]] = []
        self.jobs: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def create_listing_and_enqueue_review(self, *, listing: dict[str, Any], channel: str) -> dict[str, Any]:
        async with self._lock:
            now = datetime.now(timezone.utc)
            record = {
                "id": str(uuid4()),
                "title": listing["title"],
                "description": listing["description"],
                "category": listing["category"],
                "amount_minor_units": int(listing["amount_minor_units"]),
                "deadline": listing["deadline"],
                "scope": listing["scope"],
                "state": listing.get("state"),
                "municipality_code": listing.get("municipality_code"),
                "latitude": listing.get("latitude"),
                "longitude": listing.get("longitude"),
                "radius_meters": listing.get("radius_meters"),
                "status": PENDING_REVIEW,
                "risk_score": None,
                "created_at": now,
                "updated_at": now,
            }
            self.listings[record["id"]] = record
            self._insert_job(channel=channel, listing_id=record["id"], now=now)
            return copy.deepcopy(record)

    async def get_listing(self, listing_id: str) -> dict[str, Any] | None:
        record = self.listings.get(listing_id)
        return copy.deepcopy(record) if record else None

    async def transition_listing(
        self,
        listing_id: str,
        *,
        from_status: str,
        to_status: str,
        risk_score: int,
    ) -> bool:
        async with self._lock:
            return self._transition_listing(
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
        rows = [row for row in self.listings.values() if row["status"] == PUBLISHED]
        if category and category.strip():
            needle = category.strip().lower()
            rows = [row for row in rows if needle in row["category"].lower()]
        if scope:
            rows = [row for row in rows if row["scope"] == scope]
        if state and state.strip():
            rows = [row for row in rows if row["state"] == state.strip().upper()]
        if municipality_code and municipality_code.strip():
            rows = [row for row in rows if row["municipality_code"] == municipality_code.strip()]

        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [copy.deepcopy(row) for row in rows[offset : offset + limit]]

    async def append_moderation_event(self, listing_id: str, *, action: str, reason: str) -> None:
        async with self._lock:
            self._append_moderation_event(listing_id=listing_id, action=action, reason=reason)

    async def list_moderation_events(self, listing_id: str) -> list[dict[str, Any]]:
        return [dict(event) for event in self.moderation_events if event["listing_id"] == listing_id]

    async def apply_moderation_decision(
        self,
        listing_id: str,
        *,
        to_status: str | None,
        risk_score: int,
        action: str,
        reason: str,
    ) -> bool:
        async with self._lock:
            current = self.listings.get(listing_id)
            if current is None or current["status"] != PENDING_REVIEW:
                return False

            snapshot = copy.deepcopy(current)
            try:
                if to_status is not None and not self._transition_listing(
                    listing_id=listing_id,
                    from_status=PENDING_REVIEW,
                    to_status=to_status,
                    risk_score=risk_score,
                ):
                    return False
                self._append_moderation_event(listing_id=listing_id, action=action, reason=reason)
            except Exception:
                self.listings[listing_id] = snapshot
                raise
            return True

    async def claim_jobs(
        self,
        *,
        channel: str,
        worker_id: str,
        limit: int,
        lease_seconds: int,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            now = datetime.now(timezone.utc)
            due = [
                job
                for job in self.jobs.values()
                if job["channel"] == channel and job["status"] == "queued" and job["next_run_at"] <= now
            ]
            due.sort(key=lambda job: (job["next_run_at"], job["created_at"]))

            claimed: list[dict[str, Any]] = []
            for job in due[: max(1, limit)]:
                job["status"] = "claimed"
                job["locked_by"] = worker_id
                job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
                job["attempt"] += 1
                claimed.append(copy.deepcopy(job))
            return claimed

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._lock_claimed_job(job_id=job_id, worker_id=worker_id)
            job["status"] = "done"
            job["result_json"] = result_json
            self._release(job)
            return copy.deepcopy(job)

    async def fail_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        error_json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._lock_claimed_job(job_id=job_id, worker_id=worker_id)
            job["error_json"] = error_json
            if job["attempt"] >= job["max_attempts"]:
                job["status"] = "dead_letter"
            else:
                job["status"] = "queued"
                job["next_run_at"] = datetime.now(timezone.utc) + timedelta(
                    seconds=self._compute_retry_delay_seconds(attempt=job["attempt"])
                )
            self._release(job)
            return copy.deepcopy(job)

    async def requeue_expired_jobs(self, *, channel: str, limit: int) -> int:
        async with self._lock:
            now = datetime.now(timezone.utc)
            expired = [job for job in self.jobs.values() if job["channel"] == channel and _lease_expired(job, now=now)]
            expired.sort(key=lambda job: job["lease_expires_at"])
            for job in expired[: max(1, limit)]:
                if job["attempt"] >= job["max_attempts"]:
                    job["status"] = "dead_letter"
                    job["error_json"] = {"error": "lease expired"}
                else:
                    job["status"] = "queued"
                job["next_run_at"] = now
                self._release(job)
            return len(expired[: max(1, limit)])

    async def enqueue_missing_reviews(self, *, channel: str, limit: int, grace_seconds: int) -> int:
        async with self._lock:
            now = datetime.now(timezone.utc)
            cutoff = now - timedelta(seconds=max(0, grace_seconds))
            reviewed = {job["target_id"] for job in self.jobs.values() if job["kind"] == LISTING_REVIEW_JOB_KIND}
            reviewed.update(event["listing_id"] for event in self.moderation_events)

            missing = [
                row
                for row in self.listings.values()
                if row["status"] == PENDING_REVIEW and row["created_at"] <= cutoff and row["id"] not in reviewed
            ]
            missing.sort(key=lambda row: row["created_at"])
            for row in missing[: max(1, limit)]:
                self._insert_job(channel=channel, listing_id=row["id"], now=now)
            return len(missing[: max(1, limit)])

    async def list_dead_letter_jobs(self, *, channel: str, limit: int) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if job["channel"] == channel and job["status"] == "dead_letter"]
        return [copy.deepcopy(job) for job in rows[: max(1, limit)]]

    async def requeue_dead_letter_job(self, job_id: str) -> dict[str, Any]:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job["status"] != "dead_letter":
                raise RepositoryConflictError("job is not dead-lettered")
            job["status"] = "queued"
            job["attempt"] = 0
            job["next_run_at"] = datetime.now(timezone.utc)
            return copy.deepcopy(job)

    def _insert_job(self, *, channel: str, listing_id: str, now: datetime) -> None:
        job_id = str(uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "channel": channel,
            "kind": LISTING_REVIEW_JOB_KIND,
            "target_type": LISTING_RESOURCE_TYPE,
            "target_id": listing_id,
            "inputs_json": {"listing_id": listing_id},
            "status": "queued",
            "attempt": 0,
            "max_attempts": self.job_max_attempts,
            "next_run_at": now,
            "locked_by": None,
            "lease_expires_at": None,
            "result_json": None,
            "error_json": None,
            "created_at": now,
        }

    def _transition_listing(self, *, listing_id: str, from_status: str, to_status: str, risk_score: int) -> bool:
        if to_status not in TERMINAL_STATUSES:
            raise RepositoryConflictError(f"invalid listing status transition: {from_status} -> {to_status}")
        record = self.listings.get(listing_id)
        if record is None or record["status"] != from_status:
            return False
        record["status"] = to_status
        record["risk_score"] = risk_score
        record["updated_at"] = datetime.now(timezone.utc)
        return True

    def _append_moderation_event(self, *, listing_id: str, action: str, reason: str) -> None:
        if action not in MODERATION_ACTIONS:
            raise RepositoryValidationError(f"unknown moderation action: {action}")
        self.moderation_events.append(
            {
                "id": str(uuid4()),
                "listing_id": listing_id,
                "resource_type": LISTING_RESOURCE_TYPE,
                "resource_id": listing_id,
                "action": action,
                "reason": reason,
                "created_at": datetime.now(timezone.utc),
            }
        )

    def _lock_claimed_job(self, *, job_id: str, worker_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != "claimed":
            raise RepositoryConflictError("job is not in claimed state")
        if job["locked_by"] != worker_id:
            raise RepositoryConflictError("job claimed by another worker")
        return job

    @staticmethod
    def _release(job: dict[str, Any]) -> None:
        job["locked_by"] = None
        job["lease_expires_at"] = None

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)


def _lease_expired(job: dict[str, Any], *, now: datetime) -> bool:
    lease = job.get("lease_expires_at")
    return job.get("status") == "claimed" and lease is not None and lease <= now
