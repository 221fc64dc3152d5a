from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import time
from typing import Any

from opentelemetry import trace

from reward_board.core.config import Settings, get_settings
from reward_board.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from reward_board.jobs.executor import execute_job
from reward_board.jobs.moderation import ModerationHandler
from reward_board.services.repository import RepositoryConflictError, get_repository
from reward_board.services.scorer import load_wordlists

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ModerationWorker:
    """Claims moderation jobs and runs them on a pool of concurrent consumers.

    A single poller claims jobs and feeds them through a bounded ``asyncio.Queue``
    to ``concurrency`` consumer tasks. Handler failures and timeouts are reported
    back to the queue, which reschedules or dead-letters the job.
    """

    def __init__(
        self,
        repository: Any,
        handler: ModerationHandler,
        *,
        channel: str,
        worker_id: str,
        concurrency: int = 4,
        lease_seconds: int = 120,
        job_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        lease_reaper_interval_seconds: float = 15.0,
        lease_reaper_batch_size: int = 100,
        missing_review_interval_seconds: float = 300.0,
        missing_review_batch_size: int = 100,
        missing_review_grace_seconds: int = 60,
    ) -> None:
        self.repository = repository
        self.handler = handler
        self.channel = channel
        self.worker_id = worker_id
        self.concurrency = max(1, concurrency)
        self.lease_seconds = lease_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.lease_reaper_interval_seconds = lease_reaper_interval_seconds
        self.lease_reaper_batch_size = lease_reaper_batch_size
        self.missing_review_interval_seconds = missing_review_interval_seconds
        self.missing_review_batch_size = missing_review_batch_size
        self.missing_review_grace_seconds = missing_review_grace_seconds
        self._in_flight = 0

    @classmethod
    def from_settings(cls, settings: Settings, repository: Any) -> ModerationWorker:
        handler = ModerationHandler(
            repository,
            wordlists=load_wordlists(settings.wordlists_path),
            review_threshold=settings.moderation_review_threshold,
        )
        return cls(
            repository,
            handler,
            channel=settings.moderation_channel,
            worker_id=settings.worker_id,
            concurrency=settings.worker_concurrency,
            lease_seconds=settings.claim_lease_seconds,
            job_timeout_seconds=settings.job_timeout_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            lease_reaper_interval_seconds=settings.lease_reaper_interval_seconds,
            lease_reaper_batch_size=settings.lease_reaper_batch_size,
            missing_review_interval_seconds=settings.missing_review_interval_seconds,
            missing_review_batch_size=settings.missing_review_batch_size,
            missing_review_grace_seconds=settings.missing_review_grace_seconds,
        )

    async def process_job(self, job: dict[str, Any]) -> dict[str, Any] | None:
        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", job["id"])
            job_span.set_attribute("job.kind", str(job.get("kind")))
            job_span.set_attribute("job.attempt", int(job.get("attempt") or 0))
            try:
                result = await asyncio.wait_for(
                    execute_job(job, moderation_handler=self.handler),
                    timeout=self.job_timeout_seconds,
                )
            except Exception as exc:
                logger.exception("job execution failed for id=%s attempt=%s", job["id"], job.get("attempt"))
                return await self._report_failure(job, exc)

            try:
                return await self.repository.complete_job(job["id"], worker_id=self.worker_id, result_json=result)
            except RepositoryConflictError as exc:
                logger.warning("job completion rejected for id=%s: %s", job["id"], exc)
                return None

    async def drain(self) -> int:
        """Claim and process jobs until none are due, then return the number of deliveries handled.

        This is the one-shot mode behind `python -m reward_board.worker --once`, for cron-style
        runs and backfills after `scripts/requeue_dead_letters.py --all`.
        """
        processed = 0
        while True:
            jobs = await self.repository.claim_jobs(
                channel=self.channel,
                worker_id=self.worker_id,
                limit=self.concurrency,
                lease_seconds=self.lease_seconds,
            )
            if not jobs:
                return processed
            await asyncio.gather(*(self.process_job(job) for job in jobs))
            processed += len(jobs)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        channel: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.concurrency)
        self._in_flight = 0
        consumers = [
            asyncio.create_task(self._consume(channel), name=f"moderation-consumer-{index}")
            for index in range(self.concurrency)
        ]
        try:
            await self._poll(channel, stop)
            await channel.join()
        finally:
            for task in consumers:
                task.cancel()
            await asyncio.gather(*consumers, return_exceptions=True)

    async def _poll(self, channel: asyncio.Queue[dict[str, Any]], stop: asyncio.Event) -> None:
        backoff = self.poll_interval_seconds
        last_reap_at = 0.0
        last_sweep_at = 0.0

        while not stop.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= self.lease_reaper_interval_seconds:
                        requeued = await self.repository.requeue_expired_jobs(
                            channel=self.channel,
                            limit=self.lease_reaper_batch_size,
                        )
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    if now - last_sweep_at >= self.missing_review_interval_seconds:
                        enqueued = await self.repository.enqueue_missing_reviews(
                            channel=self.channel,
                            limit=self.missing_review_batch_size,
                            grace_seconds=self.missing_review_grace_seconds,
                        )
                        if enqueued:
                            logger.warning("enqueued reviews for listings without a job: %s", enqueued)
                        last_sweep_at = now

                    # leases start at claim time, so only claim what idle consumers can start now
                    free_slots = self.concurrency - self._in_flight
                    if free_slots <= 0:
                        await _wait(stop, self.poll_interval_seconds)
                        continue

                    jobs = await self.repository.claim_jobs(
                        channel=self.channel,
                        worker_id=self.worker_id,
                        limit=free_slots,
                        lease_seconds=self.lease_seconds,
                    )
                    if not jobs:
                        await _wait(stop, self.poll_interval_seconds)
                        continue

                    self._in_flight += len(jobs)
                    for job in jobs:
                        await channel.put(job)

                backoff = self.poll_interval_seconds
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await _wait(stop, sleep_for)
                backoff = sleep_for

    async def _consume(self, channel: asyncio.Queue[dict[str, Any]]) -> None:
        while True:
            job = await channel.get()
            try:
                await self.process_job(job)
            except Exception:
                # the lease reaper requeues the job once its lease runs out
                logger.exception("failed to record outcome for job id=%s", job.get("id"))
            finally:
                self._in_flight -= 1
                channel.task_done()

    async def _report_failure(self, job: dict[str, Any], exc: Exception) -> dict[str, Any] | None:
        error_json = {
            "error": str(exc) or type(exc).__name__,
            "type": type(exc).__name__,
            "attempt": job.get("attempt"),
        }
        try:
            failed = await self.repository.fail_job(job["id"], worker_id=self.worker_id, error_json=error_json)
        except RepositoryConflictError as conflict:
            logger.warning("job failure rejected for id=%s: %s", job["id"], conflict)
            return None

        if failed["status"] == "dead_letter":
            logger.error(
                "job dead-lettered id=%s listing_id=%s attempts=%s error=%s",
                failed["id"],
                failed.get("target_id"),
                failed.get("attempt"),
                error_json["error"],
            )
        else:
            logger.info(
                "job retry scheduled id=%s attempt=%s next_run_at=%s",
                failed["id"],
                failed.get("attempt"),
                failed.get("next_run_at"),
            )
        return failed


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


async def run_worker(*, once: bool = False) -> int:
    """Run the worker until SIGINT/SIGTERM, or with ``once`` drain due jobs and exit.

    Returns the number of deliveries handled in ``once`` mode, 0 otherwise.
    """
    settings = get_settings()
    configure_logging(component="worker")
    telemetry_runtime = setup_telemetry(settings, component="worker")
    repository = get_repository()
    worker = ModerationWorker.from_settings(settings, repository)

    try:
        if once:
            processed = await worker.drain()
            logger.info("moderation worker drained channel=%s deliveries=%s", settings.moderation_channel, processed)
            return processed

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:  # pragma: no cover - platform specific
                pass

        logger.info(
            "moderation worker started id=%s channel=%s concurrency=%s",
            settings.worker_id,
            settings.moderation_channel,
            worker.concurrency,
        )
        await worker.run(stop)
        return 0
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the listing moderation worker.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every due moderation job, then exit instead of polling",
    )
    args = parser.parse_args()
    asyncio.run(run_worker(once=args.once))


if __name__ == "__main__":
    main()
