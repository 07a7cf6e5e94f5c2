"""Rolling accuracy statistics over resolved calls.

A pure function of the checked calls at computation time; the snapshot is
recomputed from scratch every cycle.
"""

from datetime import datetime, timedelta

from signal_outcomes.schemas.signal import Call, StatsSnapshot


def _accuracy(calls: list[Call]) -> float:
    if not calls:
        return 0.0
    return sum(1 for c in calls if c.correct) / len(calls) * 100


def compute_streaks(calls: list[Call]) -> tuple[int, int]:
    """Return (current, best) runs of correct calls, most recent first.

    ``current`` is the run starting at the most recent checked call;
    ``best`` is the longest run anywhere in the sequence.
    """
    ordered = sorted((c for c in calls if c.checked), key=lambda c: c.created_at, reverse=True)

    current = None
    best = 0
    run = 0
    for call in ordered:
        if call.correct:
            run += 1
            best = max(best, run)
        else:
            if current is None:
                current = run
            run = 0

    if current is None:
        current = run

    return current, best


def compute_stats(calls: list[Call], now: datetime) -> StatsSnapshot:
    checked = [c for c in calls if c.checked]
    last_7d = [c for c in checked if c.created_at > now - timedelta(days=7)]
    last_30d = [c for c in checked if c.created_at > now - timedelta(days=30)]
    streak_current, streak_best = compute_streaks(checked)

    return StatsSnapshot(
        total=len(checked),
        correct=sum(1 for c in checked if c.correct),
        accuracy_7d=_accuracy(last_7d),
        accuracy_30d=_accuracy(last_30d),
        accuracy_all=_accuracy(checked),
        avg_confidence=sum(c.confidence for c in checked) / len(checked) if checked else 0.0,
        streak_current=streak_current,
        streak_best=streak_best,
        last_updated=now,
    )
