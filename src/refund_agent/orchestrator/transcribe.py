"""Orchestration helper to transcribe refund-request audio via Whisper."""

from __future__ import annotations

import os
import random
import time
from typing import Any, Callable

from ..domain.models import GeneratedText
from ..logging import get_logger
from .backoff import ErrorKind, classify_error

LOG = get_logger("orchestrator-transcribe")

_FALLBACK_SCENARIOS = (
    "Hello, this is regarding my recent purchase with order number ABC{id}123. I received "
    "the product last week but it's not working properly. It keeps shutting down after a few "
    "minutes of use. I've tried troubleshooting with your guide but nothing works. I'd like to "
    "request a refund as per your 30-day money-back guarantee. I can return the item in its "
    "original packaging.",
    "Hi there, I'm calling about an online order I placed about two weeks ago. The item I "
    "received doesn't match the description on your website. The color is completely "
    "different and there are some features missing that were advertised. I'm disappointed "
    "with this purchase and would like to return it for a full refund. My order number is "
    "XYZ{id}456.",
    "Good afternoon, I purchased a subscription to your service last month, but I've decided "
    "it's not meeting my needs. According to your terms, I can cancel within the first 60 days "
    "for a full refund. I'd like to proceed with that please. My account email is "
    "customer{id}@example.com.",
    "Hello, I recently bought your product from a retail store and registered it online. "
    "Unfortunately, it's defective - there's a manufacturing defect that makes it unusable. "
    "I have the receipt and it's still under warranty. I've tried contacting support but "
    "haven't received a solution, so I'd like to request a refund instead of a replacement.",
)


def fallback_transcript(record_id: Any) -> str:
    """Placeholder transcript, stable per record id."""
    rng = random.Random(f"transcript-{record_id}")
    scenario = _FALLBACK_SCENARIOS[rng.randrange(len(_FALLBACK_SCENARIOS))]
    return scenario.format(id=record_id)


class Transcriber:
    """Speech-to-text with a placeholder transcript when the service is unreachable.

    Connectivity and rate-limit failures degrade to `fallback_transcript`;
    any other error (bad audio, auth) propagates.
    """

    def __init__(
        self,
        client: Any,
        model: str = "whisper-1",
        *,
        classify: Callable[[BaseException], ErrorKind] = classify_error,
    ) -> None:
        self.client = client
        self.model = model
        self.classify = classify

    def transcribe(self, audio_path: str, record_id: Any) -> GeneratedText:
        LOG.info(f"Transcribing {audio_path} with {self.model}")
        t0 = time.time()
        try:
            with open(audio_path, "rb") as fh:
                resp = self.client.audio.transcriptions.create(file=fh, model=self.model)
            text = (getattr(resp, "text", None) or "").strip()
        except OSError:
            raise
        except Exception as e:
            if self.classify(e) is ErrorKind.FATAL:
                LOG.error(f"Transcription error for {os.path.basename(audio_path)}: {e}")
                raise
            LOG.warning(f"Speech-to-text unavailable ({e}); using fallback transcript for id={record_id}")
            return GeneratedText(fallback_transcript(record_id), fallback=True)
        if not text:
            LOG.warning(f"Empty transcription for id={record_id}; using fallback transcript")
            return GeneratedText(fallback_transcript(record_id), fallback=True)
        LOG.info(f"Transcription successful ({len(text)} characters, {time.time() - t0:.1f}s)")
        return GeneratedText(text)
