from __future__ import annotations

from typing import Any

from reward_board.jobs.moderation import ModerationHandler
from reward_board.schemas.moderation import LISTING_REVIEW_JOB_KIND


class UnsupportedJobError(Exception):
    """Raised for job kinds this worker has no handler for."""


async def execute_job(job: dict[str, Any], *, moderation_handler: ModerationHandler) -> dict[str, Any]:
    if job.get("kind") == LISTING_REVIEW_JOB_KIND:
        return await moderation_handler.handle(job)

    raise UnsupportedJobError(f"unsupported job kind: {job.get('kind')}")
