"""Signal ledger: durable storage of calls and their statistics.

The ledger is one JSON document ``{lastUpdated, signals, stats}``. Writers
use optimistic concurrency: ``load`` hands back an opaque version token and
``save`` succeeds only while that token is still current. A mismatch raises
LedgerConflict and the caller reloads and reapplies its changes.

Two backends:
  - DatabaseLedger: one SQLModel row, token = SHA-256 of the content.
  - GitHubLedger: a file in a repository via the contents API, token = blob sha.
"""

import base64
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signal_outcomes.errors import (
    DuplicateCall,
    LedgerConflict,
    LedgerReadFailure,
    LedgerWriteFailure,
)
from signal_outcomes.models.ledger_document import LedgerDocument
from signal_outcomes.schemas.signal import Call, SignalHistory, StatsSnapshot

logger = logging.getLogger(__name__)


@dataclass
class LedgerSnapshot:
    """A loaded ledger plus the token needed to save it back."""
    history: SignalHistory
    version: str | None  # None = nothing stored yet
    unparsed: list = field(default_factory=list)  # raw records that failed validation


class LedgerStore(ABC):
    """Read-modify-write access to the ledger document."""

    @abstractmethod
    async def load(self) -> LedgerSnapshot:
        """Load the document. Raises LedgerReadFailure."""

    @abstractmethod
    async def save(
        self,
        history: SignalHistory,
        expected_version: str | None,
        unparsed: list | None = None,
    ) -> str:
        """Save the document if ``expected_version`` is still current; return the new token.

        Raises LedgerConflict or LedgerWriteFailure.
        """


# ---------------------------------------------------------------------------
# Document (de)serialization
# ---------------------------------------------------------------------------

def parse_history(doc) -> tuple[SignalHistory, list]:
    """Parse a raw ledger document.

    Records that fail validation are returned separately so one bad record
    neither aborts the load nor gets lost on the next save.
    """
    if not isinstance(doc, dict):
        raise LedgerReadFailure(f"Ledger document must be an object, got {type(doc).__name__}")
    raw_signals = doc.get("signals") or []
    if not isinstance(raw_signals, list):
        raise LedgerReadFailure("Ledger 'signals' must be a list")

    calls = []
    unparsed = []
    for raw in raw_signals:
        try:
            calls.append(Call.model_validate(raw))
        except ValidationError as e:
            call_id = raw.get("id") if isinstance(raw, dict) else None
            logger.warning(f"Ignoring malformed call {call_id!r}: {e.error_count()} validation error(s)")
            unparsed.append(raw)

    try:
        stats = StatsSnapshot.model_validate(doc.get("stats") or {})
    except ValidationError:
        logger.warning("Stored stats are malformed; they will be recomputed")
        stats = StatsSnapshot()

    try:
        history = SignalHistory(last_updated=doc.get("lastUpdated"), signals=calls, stats=stats)
    except ValidationError:
        history = SignalHistory(signals=calls, stats=stats)
    return history, unparsed


def dump_history(history: SignalHistory, unparsed: list | None = None) -> dict:
    return {
        "lastUpdated": history.last_updated.isoformat() if history.last_updated else None,
        "signals": [c.to_json() for c in history.signals] + list(unparsed or []),
        "stats": history.stats.to_json(),
    }


def content_etag(doc: dict) -> str:
    canonical = json.dumps(doc, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


# ---------------------------------------------------------------------------
# Database backend
# ---------------------------------------------------------------------------

class DatabaseLedger(LedgerStore):
    """Ledger stored as a single JSON row guarded by a content hash."""

    def __init__(self, db_engine=None, name: str = "signal-history"):
        if db_engine is None:
            from signal_outcomes.database import engine as db_engine
        self.engine = db_engine
        self.name = name

    async def load(self) -> LedgerSnapshot:
        try:
            with Session(self.engine) as session:
                row = session.get(LedgerDocument, self.name)
                content = dict(row.content) if row else None
                etag = row.etag if row else None
        except SQLAlchemyError as e:
            raise LedgerReadFailure(f"Could not read ledger '{self.name}': {e}") from e

        if content is None:
            logger.info(f"Ledger '{self.name}' is empty")
            return LedgerSnapshot(history=SignalHistory(), version=None)

        history, unparsed = parse_history(content)
        return LedgerSnapshot(history=history, version=etag, unparsed=unparsed)

    async def save(
        self,
        history: SignalHistory,
        expected_version: str | None,
        unparsed: list | None = None,
    ) -> str:
        doc = dump_history(history, unparsed)
        etag = content_etag(doc)
        now = datetime.now(timezone.utc)

        if expected_version is None:
            try:
                with Session(self.engine) as session:
                    session.add(LedgerDocument(name=self.name, content=doc, etag=etag, updated_at=now))
                    session.commit()
            except IntegrityError as e:
                raise LedgerConflict(f"Ledger '{self.name}' was created concurrently") from e
            except SQLAlchemyError as e:
                raise LedgerWriteFailure(f"Could not create ledger '{self.name}': {e}") from e
            return etag

        stmt = (
            update(LedgerDocument)
            .where(LedgerDocument.name == self.name, LedgerDocument.etag == expected_version)
            .values(content=doc, etag=etag, updated_at=now)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise LedgerWriteFailure(f"Could not write ledger '{self.name}': {e}") from e

        if result.rowcount == 0:
            raise LedgerConflict(f"Ledger '{self.name}' changed since version {expected_version[:12]}")
        return etag


# ---------------------------------------------------------------------------
# GitHub backend
# ---------------------------------------------------------------------------

class GitHubLedger(LedgerStore):
    """Ledger stored as a JSON file in a GitHub repository."""

    api_url = "https://api.github.com"

    def __init__(
        self,
        token: str,
        repo: str,
        path: str = "data/signal-history.json",
        branch: str = "master",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.repo = repo
        self.path = path
        self.branch = branch
        self.timeout = timeout
        self._transport = transport

    @property
    def _url(self) -> str:
        return f"{self.api_url}/repos/{self.repo}/contents/{self.path}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"token {self.token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )

    async def load(self) -> LedgerSnapshot:
        if not self.token or not self.repo:
            raise LedgerReadFailure("GitHub ledger is not configured (token/repo missing)")

        try:
            async with self._client() as client:
                response = await _send(client, "GET", self._url, params={"ref": self.branch})
        except httpx.HTTPError as e:
            raise LedgerReadFailure(f"GitHub ledger unreachable: {e}") from e

        if response.status_code == 404:
            logger.info(f"Ledger {self.repo}/{self.path} does not exist yet")
            return LedgerSnapshot(history=SignalHistory(), version=None)
        if response.status_code != 200:
            raise LedgerReadFailure(f"GitHub ledger read failed: HTTP {response.status_code}")

        try:
            data = response.json()
            doc = json.loads(base64.b64decode(data["content"]).decode())
            sha = data["sha"]
        except (KeyError, ValueError) as e:
            raise LedgerReadFailure(f"GitHub ledger content is malformed: {e}") from e

        history, unparsed = parse_history(doc)
        return LedgerSnapshot(history=history, version=sha, unparsed=unparsed)

    async def save(
        self,
        history: SignalHistory,
        expected_version: str | None,
        unparsed: list | None = None,
    ) -> str:
        doc = dump_history(history, unparsed)
        body = {
            "message": (
                f"Update signal history: {history.stats.total} signals, "
                f"{history.stats.accuracy_all:.1f}% accuracy"
            ),
            "content": base64.b64encode(json.dumps(doc, indent=2).encode()).decode(),
            "branch": self.branch,
        }
        if expected_version:
            body["sha"] = expected_version

        try:
            async with self._client() as client:
                response = await _send(client, "PUT", self._url, json=body)
        except httpx.HTTPError as e:
            raise LedgerWriteFailure(f"GitHub ledger unreachable: {e}") from e

        # 409: sha mismatch; 422: file exists but no sha was supplied
        if response.status_code in (409, 422):
            raise LedgerConflict(f"GitHub ledger changed concurrently (HTTP {response.status_code})")
        if response.status_code not in (200, 201):
            raise LedgerWriteFailure(f"GitHub ledger write failed: HTTP {response.status_code}")

        try:
            return response.json()["content"]["sha"]
        except (KeyError, ValueError) as e:
            raise LedgerWriteFailure(f"GitHub ledger write returned no sha: {e}") from e


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=0.5, max=4),
    reraise=True,
)
async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
    return await client.request(method, url, **kwargs)


# ---------------------------------------------------------------------------
# Factory and operations
# ---------------------------------------------------------------------------

def build_ledger() -> LedgerStore:
    """Create the ledger backend selected in settings."""
    from signal_outcomes.config import settings

    if settings.ledger_backend == "github":
        return GitHubLedger(
            token=settings.github_token,
            repo=settings.github_repo,
            path=settings.github_path,
            branch=settings.github_branch,
            timeout=settings.http_timeout_seconds,
        )
    if settings.ledger_backend == "database":
        return DatabaseLedger()
    raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")


async def append_call(ledger: LedgerStore, call: Call, max_attempts: int = 3) -> Call:
    """Add a new pending call to the ledger, retrying on concurrent writes.

    Raises DuplicateCall if the id is taken, LedgerConflict once attempts run out.
    """
    for attempt in range(1, max_attempts + 1):
        snapshot = await ledger.load()
        history = snapshot.history
        taken = {c.id for c in history.signals}
        # Malformed records keep their ids too
        taken.update(r.get("id") for r in snapshot.unparsed if isinstance(r, dict))
        if call.id in taken:
            raise DuplicateCall(f"Call {call.id} already exists")

        history.signals.append(call)
        history.last_updated = datetime.now(timezone.utc)
        try:
            await ledger.save(history, snapshot.version, snapshot.unparsed)
        except LedgerConflict:
            logger.warning(f"Ledger conflict recording call {call.id} (attempt {attempt}/{max_attempts})")
            continue

        logger.info(
            f"Recorded call {call.id}: {call.direction} @ ${call.entry_price:,.2f} "
            f"({call.confidence * 100:.0f}% confidence)"
        )
        return call

    raise LedgerConflict(f"Could not record call {call.id} after {max_attempts} attempts")
