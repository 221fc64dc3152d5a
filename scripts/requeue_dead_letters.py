#!/usr/bin/env python3
"""List dead-lettered moderation jobs, or put them back on the queue."""

from __future__ import annotations

import argparse
import asyncio
import json

from reward_board.core.config import get_settings
from reward_board.schemas.moderation import JobOut
from reward_board.services.repository import RepositoryError, get_repository


async def run(*, job_ids: list[str], requeue_all: bool, limit: int) -> int:
    settings = get_settings()
    repository = get_repository()
    exit_code = 0
    try:
        dead_letters = await repository.list_dead_letter_jobs(channel=settings.moderation_channel, limit=limit)
        if not job_ids and not requeue_all:
            for job in dead_letters:
                print(JobOut(**job).model_dump_json())
            return exit_code

        targets = job_ids or [job["id"] for job in dead_letters]
        for job_id in targets:
            try:
                job = await repository.requeue_dead_letter_job(job_id)
            except RepositoryError as exc:
                print(json.dumps({"id": job_id, "error": str(exc)}))
                exit_code = 1
                continue
            print(json.dumps({"id": job["id"], "status": job["status"], "listing_id": job["target_id"]}))
        return exit_code
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect or requeue dead-lettered moderation jobs.")
    target_group = parser.add_mutually_exclusive_group()
    target_group.add_argument("--job-id", action="append", default=[], help="Requeue this job (repeatable)")
    target_group.add_argument("--all", action="store_true", help="Requeue every listed dead-lettered job")
    parser.add_argument("--limit", type=int, default=100, help="Maximum number of dead-lettered jobs to list")
    args = parser.parse_args()

    raise SystemExit(asyncio.run(run(job_ids=args.job_id, requeue_all=args.all, limit=args.limit)))


if __name__ == "__main__":
    main()
