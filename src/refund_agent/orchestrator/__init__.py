"""Pipeline services and the query router."""

from .backoff import ErrorKind, classify_error, compute_delay, with_retry
from .batch import BatchOrchestrator, BatchSettings
from .fetch import MediaFetcher
from .flow import AgentConfig, RefundAgent, build_agent_config
from .intent import IntentClassifier
from .query import QueryCompiler, parse_query
from .slot import TaskSlot
from .summarize import Summarizer, fallback_summary
from .transcribe import Transcriber, fallback_transcript
from .vision import ReceiptVision

__all__ = [
    "AgentConfig",
    "BatchOrchestrator",
    "BatchSettings",
    "ErrorKind",
    "IntentClassifier",
    "MediaFetcher",
    "QueryCompiler",
    "ReceiptVision",
    "RefundAgent",
    "Summarizer",
    "TaskSlot",
    "Transcriber",
    "build_agent_config",
    "classify_error",
    "compute_delay",
    "fallback_summary",
    "fallback_transcript",
    "parse_query",
    "with_retry",
]
