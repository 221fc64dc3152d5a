from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from reward_board.schemas.listings import BANNED, PENDING_REVIEW, PUBLISHED
from reward_board.schemas.moderation import ModerationAction
from reward_board.services.scorer import DEFAULT_WORDLISTS, RiskAssessment, Wordlists, evaluate

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_THRESHOLD = 40
AUTO_APPROVE_REASON = "auto"


@dataclass(frozen=True, slots=True)
class ModerationDecision:
    action: ModerationAction
    to_status: str | None
    risk_score: int
    reason: str


def decide(assessment: RiskAssessment, *, review_threshold: int = DEFAULT_REVIEW_THRESHOLD) -> ModerationDecision:
    """Map a risk assessment onto the listing state machine.

    Banned terms always reject. Scores at or above ``review_threshold`` are held
    in PENDING_REVIEW with an ADJUST event; anything else is published.
    """
    if assessment.has_banned_flag:
        return ModerationDecision(
            action="REJECT",
            to_status=BANNED,
            risk_score=assessment.score,
            reason=", ".join(assessment.flags),
        )
    if assessment.score >= review_threshold:
        return ModerationDecision(
            action="ADJUST",
            to_status=None,
            risk_score=assessment.score,
            reason=", ".join(assessment.flags),
        )
    return ModerationDecision(
        action="APPROVE",
        to_status=PUBLISHED,
        risk_score=assessment.score,
        reason=AUTO_APPROVE_REASON,
    )


def listing_text(listing: dict[str, Any]) -> str:
    return f"{listing.get('title') or ''}\n{listing.get('description') or ''}"


class ModerationHandler:
    def __init__(
        self,
        repository: Any,
        *,
        wordlists: Wordlists = DEFAULT_WORDLISTS,
        review_threshold: int = DEFAULT_REVIEW_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.wordlists = wordlists
        self.review_threshold = review_threshold

    async def handle(self, job: dict[str, Any]) -> dict[str, Any]:
        listing_id = _resolve_listing_id(job)
        result: dict[str, Any] = {
            "handled": True,
            "kind": job.get("kind"),
            "listing_id": listing_id,
        }
        if not listing_id:
            result["outcome"] = "missing_listing_id"
            return result

        listing = await self.repository.get_listing(listing_id)
        if listing is None:
            logger.info("listing not found; skipping review listing_id=%s", listing_id)
            result["outcome"] = "listing_not_found"
            return result
        if listing["status"] != PENDING_REVIEW:
            result["outcome"] = "already_moderated"
            result["status"] = listing["status"]
            return result

        assessment = evaluate(listing_text(listing), wordlists=self.wordlists)
        decision = decide(assessment, review_threshold=self.review_threshold)
        applied = await self.repository.apply_moderation_decision(
            listing_id,
            to_status=decision.to_status,
            risk_score=decision.risk_score,
            action=decision.action,
            reason=decision.reason,
        )

        logger.info(
            "listing reviewed listing_id=%s action=%s score=%s flags=%s applied=%s",
            listing_id,
            decision.action,
            assessment.score,
            len(assessment.flags),
            applied,
        )
        result.update(
            {
                "outcome": decision.action.lower() if applied else "superseded",
                "action": decision.action,
                "risk_score": assessment.score,
                "flags": list(assessment.flags),
                "applied": applied,
            }
        )
        return result


def _resolve_listing_id(job: dict[str, Any]) -> str | None:
    raw_inputs = job.get("inputs_json")
    inputs: dict[str, Any] = raw_inputs if isinstance(raw_inputs, dict) else {}
    listing_id = inputs.get("listing_id") or job.get("target_id")
    if isinstance(listing_id, str) and listing_id.strip():
        return listing_id.strip()
    return None
