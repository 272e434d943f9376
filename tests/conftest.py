from __future__ import annotations

import os
import random
import re
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

SRC = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from refund_agent.domain.models import Filter  # noqa: E402
from refund_agent.domain.normalize import fix_storage_url  # noqa: E402
from refund_agent.orchestrator.batch import BatchOrchestrator, BatchSettings  # noqa: E402
from refund_agent.orchestrator.flow import RefundAgent  # noqa: E402
from refund_agent.orchestrator.intent import IntentClassifier  # noqa: E402
from refund_agent.orchestrator.llm import ChatModel  # noqa: E402
from refund_agent.orchestrator.query import QueryCompiler  # noqa: E402
from refund_agent.orchestrator.summarize import Summarizer  # noqa: E402
from refund_agent.orchestrator.transcribe import Transcriber  # noqa: E402
from refund_agent.orchestrator.vision import ReceiptVision  # noqa: E402

STORAGE_BASE = "https://proj.supabase.co/storage/v1/object/public"

_LIKE_TOKENS = re.compile(r"([%_])|([^%_]+)")


def _like_to_regex(pattern: str, ignore_case: bool = False) -> "re.Pattern[str]":
    parts = []
    for wildcard, literal in _LIKE_TOKENS.findall(pattern):
        if wildcard == "%":
            parts.append(".*")
        elif wildcard == "_":
            parts.append(".")
        else:
            parts.append(re.escape(literal))
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile("^" + "".join(parts) + "$", flags)


def _op_holds(op: str, actual: Any, expected: Any) -> bool:
    if op == "is":
        return actual is expected
    if op == "in":
        return actual in list(expected or [])
    if actual is None:
        return False
    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if op in ("like", "ilike"):
        return bool(_like_to_regex(str(expected), op == "ilike").match(str(actual)))
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter op: {op}")


def row_matches(f: Filter, row: Dict[str, Any]) -> bool:
    """Evaluate one PostgREST-style Filter against a plain dict row."""
    result = _op_holds(f.op, row.get(f.column), f.value)
    return not result if f.negate else result


class InMemoryStore:
    """Dict-backed stand-in for SupabaseStore using the same Filter semantics."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None, bucket: str = "receipts") -> None:
        self.tables = {k: [dict(r) for r in v] for k, v in (tables or {}).items()}
        self.bucket = bucket
        self.updates: List[tuple] = []
        self.update_errors: List[Exception] = []

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def select(self, table, filters=None, *, columns="*", order=None, limit=None):
        rows = [r for r in self._rows(table) if all(row_matches(f, r) for f in filters or [])]
        if order:
            col, ascending = order
            rows = sorted(rows, key=lambda r: (r.get(col) is None, r.get(col)), reverse=not ascending)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            keep = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in keep} for r in rows]
        return [dict(r) for r in rows]

    def insert(self, table, rows):
        rows = rows if isinstance(rows, list) else [rows]
        self._rows(table).extend(dict(r) for r in rows)
        return [dict(r) for r in rows]

    def update(self, table, patch, filters):
        filters = list(filters)
        self.updates.append((table, dict(patch), filters))
        if self.update_errors:
            raise self.update_errors.pop(0)
        out = []
        for r in self._rows(table):
            if all(row_matches(f, r) for f in filters):
                r.update(patch)
                out.append(dict(r))
        return out

    def delete(self, table, filters):
        filters = list(filters)
        keep, gone = [], []
        for r in self._rows(table):
            (gone if all(row_matches(f, r) for f in filters) else keep).append(r)
        self.tables[table] = keep
        return gone

    def public_url(self, filename, bucket=None):
        bucket = bucket or self.bucket
        return fix_storage_url(f"{STORAGE_BASE}/{bucket}/{filename}?", bucket)


def _completion(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeOpenAI:
    """Mimics `client.chat.completions.create` and `client.audio.transcriptions.create`.

    Each queued item is returned in order; exceptions are raised. When the
    queue runs dry the last item repeats.
    """

    def __init__(self, replies: Optional[List[Any]] = None, transcripts: Optional[List[Any]] = None) -> None:
        self.replies = list(replies or [])
        self.transcripts = list(transcripts or [])
        self.chat_calls: List[Dict[str, Any]] = []
        self.audio_calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._chat))
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._transcribe))

    @staticmethod
    def _next(queue: List[Any]) -> Any:
        if not queue:
            raise AssertionError("no fake reply queued")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def _chat(self, **kwargs):
        self.chat_calls.append(kwargs)
        return _completion(self._next(self.replies))

    def _transcribe(self, *, file, model):
        self.audio_calls.append({"name": getattr(file, "name", None), "model": model})
        return SimpleNamespace(text=self._next(self.transcripts))


class RecordingSleeper:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeFetcher:
    """MediaFetcher stand-in: per-URL failures, small files written for audio."""

    def __init__(self, scratch_dir: str, failures: Optional[Dict[str, Exception]] = None) -> None:
        self.scratch_dir = scratch_dir
        self.failures = dict(failures or {})
        self.fetched: List[str] = []
        self.written: List[str] = []

    def _maybe_fail(self, url: str) -> None:
        self.fetched.append(url)
        for marker, exc in self.failures.items():
            if marker in url:
                raise exc

    def fetch_bytes(self, url: str):
        self._maybe_fail(url)
        return b"\x89PNG fake image", "image/png"

    def fetch_to_file(self, url: str, dest_name: str) -> str:
        self._maybe_fail(url)
        os.makedirs(self.scratch_dir, exist_ok=True)
        path = os.path.join(self.scratch_dir, dest_name)
        with open(path, "wb") as fh:
            fh.write(b"ID3 fake audio")
        self.written.append(path)
        return path


class FakeResponse:
    def __init__(self, status_code: int = 200, chunks=None, headers=None, iter_error: Optional[Exception] = None) -> None:
        self.status_code = status_code
        self.chunks = list(chunks or [])
        self.headers = dict(headers or {})
        self.iter_error = iter_error
        self.closed = False

    def iter_content(self, chunk_size: int = 1024):
        for c in self.chunks:
            yield c
        if self.iter_error is not None:
            raise self.iter_error

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, stream=False, timeout=None):
        self.requests.append({"url": url, "stream": stream, "timeout": timeout})
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response


@pytest.fixture
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(
        {
            "employees": [
                {"id": 1, "name": "John Doe", "age": 30, "salary": 50000},
                {"id": 2, "name": "Jane Smith", "age": 41, "salary": 72000},
                {"id": 3, "name": "Bob Stone", "age": 25, "salary": 1000},
            ],
            "refund_requests": [
                {"id": i, "name": f"Customer {i}", "amount": None, "image_url": None,
                 "audio_url": None, "summary": None}
                for i in range(1, 11)
            ],
        }
    )


@pytest.fixture
def make_agent(tmp_path, sleeper, rng):
    """Wire a RefundAgent from fakes. Returns (agent, parts) for assertions."""

    def _make(
        store: InMemoryStore,
        *,
        chat_replies=None,
        vision_replies=None,
        transcripts=None,
        failures=None,
        settings: Optional[BatchSettings] = None,
    ):
        chat_client = FakeOpenAI(replies=chat_replies or ["database_query"])
        vision_client = FakeOpenAI(replies=vision_replies or ["42.00"])
        audio_client = FakeOpenAI(transcripts=transcripts or ["I want a refund for order 77."])
        fetcher = FakeFetcher(str(tmp_path / "scratch"), failures)
        chat = ChatModel(chat_client, "chat-model")
        vision = ReceiptVision(ChatModel(vision_client, "vision-model"), fetcher, sleep=sleeper, rng=rng)
        batch = BatchOrchestrator(
            store,
            fetcher,
            vision,
            Transcriber(audio_client),
            Summarizer(chat),
            settings=settings or BatchSettings(item_delay=2.0, stage_delay=1.0),
            sleep=sleeper,
            rng=rng,
        )
        agent = RefundAgent(
            store=store,
            classifier=IntentClassifier(chat),
            compiler=QueryCompiler(chat, store, sleep=sleeper, rng=rng),
            batch=batch,
        )
        parts = SimpleNamespace(
            chat=chat_client, vision=vision_client, audio=audio_client, fetcher=fetcher, batch=batch
        )
        return agent, parts

    return _make




@pytest.fixture
def fakes() -> SimpleNamespace:
    """Fake classes for tests that build their own collaborators."""
    return SimpleNamespace(
        InMemoryStore=InMemoryStore,
        FakeOpenAI=FakeOpenAI,
        FakeFetcher=FakeFetcher,
        FakeResponse=FakeResponse,
        FakeSession=FakeSession,
    )
