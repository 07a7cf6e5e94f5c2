"""Outcome resolver: move pending calls to correct/incorrect.

PENDING -> RESOLVED(correct) | RESOLVED(incorrect). RESOLVED is absorbing:
checked calls are skipped, never re-evaluated.
"""

import logging
from dataclasses import dataclass, field

from signal_outcomes.engine.policies import MarketSnapshot, ResolutionPolicy, select_policy
from signal_outcomes.errors import MalformedCall
from signal_outcomes.schemas.signal import Call

logger = logging.getLogger(__name__)


@dataclass
class ResolutionReport:
    checked: int = 0
    correct: int = 0
    skipped: int = 0  # malformed calls left pending
    resolved_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def needs_candles(call: Call) -> bool:
    return call.is_pending and select_policy(call).name == "path_dependent"


def resolve_pending(
    calls: list[Call],
    market: MarketSnapshot,
    policy_for=select_policy,
) -> ResolutionReport:
    """Judge every pending call against one market snapshot, mutating calls in place."""
    report = ResolutionReport()

    for call in calls:
        if call.checked:
            continue

        policy: ResolutionPolicy = policy_for(call)
        try:
            verdict = policy.evaluate(call, market)
        except MalformedCall as e:
            logger.warning(f"Skipping malformed call: {e}")
            report.skipped += 1
            report.errors.append(str(e))
            continue

        if verdict is None:
            continue

        call.mark_resolved(
            correct=verdict.correct,
            price=verdict.price,
            reason=verdict.reason,
            resolved_at=market.now,
            price_after_24h=verdict.price_after_24h,
        )
        report.checked += 1
        report.resolved_ids.append(call.id)
        if verdict.correct:
            report.correct += 1

        logger.info(
            f"Call {call.id}: {call.direction} @ ${call.entry_price:,.2f} -> ${verdict.price:,.2f} "
            f"[{policy.name}/{verdict.reason}] {'CORRECT' if verdict.correct else 'INCORRECT'}"
        )

    return report
