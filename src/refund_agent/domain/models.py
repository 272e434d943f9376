from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

EMPLOYEES = "employees"
REFUND_REQUESTS = "refund_requests"
COLLECTIONS = (EMPLOYEES, REFUND_REQUESTS)


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class Stage(str, Enum):
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"


@dataclass
class RefundRequest:
    id: int
    name: Optional[str] = None
    amount: Optional[Decimal] = None
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    summary: Optional[str] = None
    status: Optional[str] = None
    processing_stage: Optional[str] = None
    processing_started: Optional[str] = None
    processing_completed: Optional[str] = None
    processing_time_seconds: Optional[float] = None
    error_message: Optional[str] = None
    last_updated: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RefundRequest":
        amount = row.get("amount")
        known = {f.name for f in fields(cls)} - {"id", "amount"}
        return cls(
            id=int(row["id"]),
            amount=Decimal(str(amount)) if amount is not None else None,
            **{k: v for k, v in row.items() if k in known},
        )

    def summary_text(self) -> Optional[str]:
        """Return just the summary part of the stored transcript+summary text."""
        if not self.summary:
            return self.summary
        if SUMMARY_MARKER in self.summary:
            return self.summary.split(SUMMARY_MARKER, 1)[1].strip()
        return self.summary


@dataclass
class Employee:
    id: int
    name: str
    age: Optional[int] = None
    salary: Optional[Decimal] = None


def table_columns(table: str) -> Tuple[str, ...]:
    """Column names of a collection, read off its row model."""
    model = {EMPLOYEES: Employee, REFUND_REQUESTS: RefundRequest}[table]
    return tuple(f.name for f in fields(model))


TRANSCRIPT_MARKER = "TRANSCRIPTION:"
SUMMARY_MARKER = "SUMMARY:"


def combine_transcript(transcript: str, summary: str) -> str:
    return f"{TRANSCRIPT_MARKER}\n{transcript}\n\n{SUMMARY_MARKER}\n{summary}"


class IntentType(str, Enum):
    DATABASE_QUERY = "database_query"
    RECEIPT_PROCESSING = "receipt_processing"
    AUDIO_PROCESSING = "audio_processing"
    AUDIO_SUMMARY = "audio_summary"
    RECEIPT_URL = "receipt_url"


@dataclass
class Intent:
    type: IntentType
    file_names: List[str] = field(default_factory=list)
    file_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type.value}
        if self.file_names:
            out["file_names"] = list(self.file_names)
        if self.file_name:
            out["file_name"] = self.file_name
        return out


@dataclass
class ProcessingResult:
    """Outcome for one batch item; only its side effects are persisted."""

    identifier: str
    success: bool
    record_id: Optional[int] = None
    amount: Optional[float] = None
    transcription_length: Optional[int] = None
    summary_length: Optional[int] = None
    used_fallback: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BatchReport:
    results: List[ProcessingResult] = field(default_factory=list)
    error_summary: Dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)

    @property
    def total(self) -> int:
        return len(self.results)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "error_summary": dict(self.error_summary),
            "results": [r.as_dict() for r in self.results],
        }


@dataclass
class BackoffState:
    """Retry bookkeeping scoped to one retry loop."""

    retry_count: int = 0
    base_delay: float = 2.0
    max_delay: float = 30.0


@dataclass(frozen=True)
class Filter:
    """One filter predicate: `column op value`, optionally negated.

    Ops follow PostgREST naming: eq, neq, gt, gte, lt, lte, like, ilike, is, in.
    """

    column: str
    op: str
    value: Any
    negate: bool = False


class Operation(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class QueryPlan:
    """Structured database operation parsed from model output."""

    operation: Operation
    table: str
    columns: str = "*"
    filters: List[Filter] = field(default_factory=list)
    payload: Any = None
    order: Optional[Tuple[str, bool]] = None  # (column, ascending)
    limit: Optional[int] = None


@dataclass
class QueryResult:
    data: Any
    error: Optional[str]
    operation_type: str
    table: str
    generated_query: Optional[str]
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "operation_type": self.operation_type,
            "table": self.table,
            "generated_query": self.generated_query,
        }
        if self.message:
            out["message"] = self.message
        if isinstance(self.data, list):
            out["count"] = len(self.data)
        return out


@dataclass
class GeneratedText:
    """Model output, or substitute content when the model was unavailable."""

    text: str
    fallback: bool = False
