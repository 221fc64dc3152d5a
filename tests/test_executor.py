from __future__ import annotations

import asyncio
from typing import Any

import pytest

from reward_board.jobs import executor
from reward_board.jobs.executor import UnsupportedJobError


def test_execute_job_dispatches_listing_review_to_moderation_handler() -> None:
    captured: dict[str, Any] = {}

    class FakeHandler:
        async def handle(self, job: dict[str, Any]) -> dict[str, Any]:
            captured["job"] = job
            return {"handled": True, "outcome": "approve"}

    result = asyncio.run(
        executor.execute_job(
            {"kind": "listing-review", "inputs_json": {"listing_id": "listing-1"}},
            moderation_handler=FakeHandler(),  # type: ignore[arg-type]
        )
    )

    assert result["outcome"] == "approve"
    assert captured["job"]["inputs_json"]["listing_id"] == "listing-1"


def test_execute_job_rejects_unknown_kinds() -> None:
    with pytest.raises(UnsupportedJobError, match="listing-translate"):
        asyncio.run(executor.execute_job({"kind": "listing-translate"}, moderation_handler=None))  # type: ignore[arg-type]
