from __future__ import annotations

import re
from typing import Callable, Optional

from ..domain.models import GeneratedText
from ..logging import get_logger
from .backoff import ErrorKind, classify_error
from .llm import ChatModel

LOG = get_logger("orchestrator-summarize")

SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, accurate summaries of audio "
    "transcriptions. Focus on key points, maintain the original meaning, and highlight "
    "any actions requested by the customer."
)

_ORDER_RE = re.compile(
    r"order\s*(?:number|no\.?|#)?\s*(?:is\s+)?#?\s*([A-Z0-9-]*\d[A-Z0-9-]*)",
    re.IGNORECASE,
)
_DEFECT = ("defect", "not working", "broken", "damaged")
_MISMATCH = ("not as described", "doesn't match", "does not match")
_UNSUITED = ("changed my mind", "not meeting my needs")
_WARRANTY = ("warranty", "guarantee")
_RETURN = ("return", "send back")


def _has_any(text: str, words) -> bool:
    return any(w in text for w in words)


def fallback_summary(transcript: str) -> str:
    """One templated sentence from keyword families found in the transcript."""
    low = (transcript or "").lower()
    summary = "Customer is requesting a refund"
    m = _ORDER_RE.search(transcript or "")
    if m:
        summary += f" for order {m.group(1)}"
    if _has_any(low, _DEFECT):
        summary += " due to a defective or non-functioning product"
    elif _has_any(low, _MISMATCH):
        summary += " because the product doesn't match the description"
    elif _has_any(low, _UNSUITED):
        summary += " because the product doesn't meet their needs"
    if _has_any(low, _WARRANTY):
        summary += " and mentions product warranty/guarantee"
    if _has_any(low, _RETURN):
        summary += " and is willing to return the item"
    return summary + "."


class Summarizer:
    """Short refund-oriented summary from a transcript; never returns empty text."""

    def __init__(
        self,
        model: Optional[ChatModel],
        *,
        classify: Callable[[BaseException], ErrorKind] = classify_error,
        max_tokens: int = 300,
    ) -> None:
        self.model = model
        self.classify = classify
        self.max_tokens = max_tokens

    def summarize(self, transcript: str) -> GeneratedText:
        if self.model is None:
            return GeneratedText(fallback_summary(transcript), fallback=True)
        LOG.info(f"Generating summary (text length: {len(transcript)})")
        try:
            text = self.model.chat(
                [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": "Please summarize this audio transcription from a customer "
                        f"requesting a refund:\n\n{transcript}",
                    },
                ],
                temperature=0.3,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            if self.classify(e) is ErrorKind.FATAL:
                LOG.error(f"Summarization error: {e}")
                raise
            LOG.warning(f"Summary model unavailable ({e}); using fallback summary")
            return GeneratedText(fallback_summary(transcript), fallback=True)
        LOG.info(f"Summary generated ({len(text)} characters)")
        return GeneratedText(text)
