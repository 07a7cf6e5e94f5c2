"""CLI tool for operator tasks.

Usage:
    python -m signal_outcomes.cli resolve
    python -m signal_outcomes.cli stats
    python -m signal_outcomes.cli serve [--host HOST] [--port PORT]
"""

import asyncio
import json
import sys

from signal_outcomes.config import settings
from signal_outcomes.database import create_db_and_tables
from signal_outcomes.errors import OutcomeError
from signal_outcomes.utils.logging import setup_logging


def resolve():
    """Run one resolution cycle and print the result."""
    from signal_outcomes.engine.cycle import run_outcome_cycle

    create_db_and_tables()
    try:
        result = asyncio.run(run_outcome_cycle(trigger="cli"))
    except OutcomeError as e:
        print(json.dumps({"success": False, "error": f"{type(e).__name__}: {e}"}, indent=2))
        sys.exit(1)
    print(json.dumps(result.to_response(), indent=2))


def stats():
    """Print the stored statistics."""
    from signal_outcomes.services.ledger import build_ledger

    create_db_and_tables()
    try:
        snapshot = asyncio.run(build_ledger().load())
    except OutcomeError as e:
        print(f"Could not load ledger: {e}")
        sys.exit(1)

    history = snapshot.history
    pending = sum(1 for c in history.signals if c.is_pending)
    s = history.stats
    print(f"Last updated:   {history.last_updated.isoformat() if history.last_updated else 'never'}")
    print(f"Calls:          {len(history.signals)} ({pending} pending)")
    print(f"Resolved:       {s.total} ({s.correct} correct)")
    print(f"Accuracy 7d:    {s.accuracy_7d:.1f}%")
    print(f"Accuracy 30d:   {s.accuracy_30d:.1f}%")
    print(f"Accuracy all:   {s.accuracy_all:.1f}%")
    print(f"Avg confidence: {s.avg_confidence * 100:.1f}%")
    print(f"Streak:         {s.streak_current} (best {s.streak_best})")
    if snapshot.unparsed:
        print(f"Malformed:      {len(snapshot.unparsed)} record(s) ignored")


def serve(args: list[str]):
    """Run the API server with the scheduler."""
    import uvicorn

    host = "0.0.0.0"
    port = 8000
    if "--host" in args:
        host = args[args.index("--host") + 1]
    if "--port" in args:
        port = int(args[args.index("--port") + 1])
    uvicorn.run("signal_outcomes.main:app", host=host, port=port, log_level=settings.log_level.lower())


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m signal_outcomes.cli <command>")
        print("Commands: resolve, stats, serve")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "resolve":
        resolve()
    elif command == "stats":
        stats()
    elif command == "serve":
        serve(sys.argv[2:])
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
