from __future__ import annotations

import os
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from ..domain.errors import DatabaseError, OperationCancelled
from ..domain.models import (
    REFUND_REQUESTS,
    BatchReport,
    Filter,
    ProcessingResult,
    RequestStatus,
    Stage,
    combine_transcript,
)
from ..domain.normalize import error_category, record_id_from_filename
from ..logging import get_logger
from .backoff import check_cancelled, with_retry
from .fetch import MediaFetcher
from .summarize import Summarizer
from .transcribe import Transcriber
from .vision import ReceiptVision

LOG = get_logger("orchestrator-batch")


@dataclass(frozen=True)
class BatchSettings:
    item_delay: float = 2.0
    stage_delay: float = 1.0
    batch_size: int = 0
    batch_pause: float = 10.0
    track_status: bool = False
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _by_id(record_id: Any) -> List[Filter]:
    return [Filter("id", "eq", record_id)]


class BatchOrchestrator:
    """Drive receipts and audio rows through fetch -> model -> persist, one at a time.

    A failing item is recorded and the batch moves on. Items are separated by
    `item_delay`; with `batch_size` set, groups are separated by `batch_pause`
    instead. Status columns are only written when `track_status` is on, and a
    failure to write them is logged, never fatal.
    """

    def __init__(
        self,
        store: Any,
        fetcher: MediaFetcher,
        vision: Optional[ReceiptVision],
        transcriber: Optional[Transcriber],
        summarizer: Optional[Summarizer],
        *,
        settings: Optional[BatchSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        on_progress: Optional[Callable[[Dict[str, float]], None]] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.vision = vision
        self.transcriber = transcriber
        self.summarizer = summarizer
        self.settings = settings or BatchSettings()
        self.sleep = sleep
        self.clock = clock
        self.rng = rng
        self.on_progress = on_progress

    # ---------- shared loop ----------
    def _run(
        self,
        items: List[Any],
        handler: Callable[[Any, Optional[threading.Event]], ProcessingResult],
        *,
        label: str,
        cancel: Optional[threading.Event] = None,
    ) -> BatchReport:
        report = BatchReport()
        total = len(items)
        started = self.clock()
        size = int(self.settings.batch_size or 0)
        LOG.info(f"Starting {label} batch: {total} item(s)")
        for index, item in enumerate(items):
            check_cancelled(cancel)
            if index > 0:
                if size > 0 and index % size == 0:
                    LOG.info(
                        "Finished group %d; pausing %.1fs before next group",
                        index // size, self.settings.batch_pause,
                    )
                    self.sleep(self.settings.batch_pause)
                else:
                    LOG.info(f"Waiting {self.settings.item_delay}s to avoid rate limits...")
                    self.sleep(self.settings.item_delay)
                check_cancelled(cancel)
            result = handler(item, cancel)
            report.results.append(result)
            if not result.success and not result.skipped:
                cat = error_category(result.error)
                report.error_summary[cat] = report.error_summary.get(cat, 0) + 1
            self._progress(index + 1, total, self.clock() - started)
        report.elapsed_seconds = self.clock() - started
        LOG.info(
            "%s batch done: success=%d failed=%d skipped=%d total=%d",
            label, report.success, report.failed, report.skipped, report.total,
        )
        for cat, count in report.error_summary.items():
            LOG.info(f"  {cat}: {count}")
        return report

    def _progress(self, done: int, total: int, elapsed: float) -> None:
        eta = (elapsed / done) * (total - done) if done else 0.0
        LOG.info(f"Progress {done}/{total} ({done * 100 // max(total, 1)}%), elapsed {elapsed:.1f}s, ETA {eta:.1f}s")
        if self.on_progress:
            self.on_progress({"done": done, "total": total, "elapsed": elapsed, "eta": eta})

    def _retry(self, op, label: str, cancel: Optional[threading.Event]):
        return with_retry(
            op,
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
            sleep=self.sleep,
            rng=self.rng,
            cancel=cancel,
            label=label,
        )

    # ---------- status tracking ----------
    def _track(self, record_id: Any, **fields: Any) -> None:
        if not self.settings.track_status or record_id is None:
            return
        patch = {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}
        patch["last_updated"] = _now_iso()
        try:
            self.store.update(REFUND_REQUESTS, patch, _by_id(record_id))
        except Exception as e:
            LOG.warning(f"Status update for id={record_id} failed: {e}")

    def _track_failed(self, record_id: Any, message: str) -> None:
        self._track(
            record_id,
            status=RequestStatus.FAILED,
            error_message=message[:500],
            processing_completed=_now_iso(),
        )

    def _track_complete(self, record_id: Any, started: float) -> None:
        self._track(
            record_id,
            status=RequestStatus.COMPLETE,
            processing_stage=None,
            processing_completed=_now_iso(),
            processing_time_seconds=round(self.clock() - started, 2),
            error_message=None,
        )

    # ---------- receipts ----------
    def _save_amount(self, record_id: Optional[int], amount: float, url: str, cancel) -> None:
        if record_id is None:
            LOG.info(f"Updating refund_requests by image_url match with amount {amount}")
            self._retry(
                lambda: self.store.update(REFUND_REQUESTS, {"amount": amount}, [Filter("image_url", "eq", url)]),
                "save amount",
                cancel,
            )
            return
        LOG.info(f"Updating refund_requests id={record_id} with amount {amount} and URL")
        try:
            self._retry(
                lambda: self.store.update(
                    REFUND_REQUESTS, {"amount": amount, "image_url": url}, _by_id(record_id)
                ),
                "save amount",
                cancel,
            )
        except DatabaseError as e:
            msg = str(e).lower()
            if "unique constraint" not in msg and "duplicate key" not in msg:
                raise
            LOG.warning("Detected duplicate image_url; updating only the amount")
            self._retry(
                lambda: self.store.update(REFUND_REQUESTS, {"amount": amount}, _by_id(record_id)),
                "save amount",
                cancel,
            )

    def _process_receipt(self, file_name: str, cancel: Optional[threading.Event]) -> ProcessingResult:
        record_id = record_id_from_filename(file_name)
        started = self.clock()
        LOG.info(f"Processing {file_name}...")
        try:
            if self.vision is None:
                raise RuntimeError("Receipt vision model is not configured")
            self._track(
                record_id,
                status=RequestStatus.PROCESSING,
                processing_stage=Stage.DOWNLOADING,
                processing_started=_now_iso(),
            )
            url = self.store.public_url(file_name)
            LOG.info(f"Retrieved URL: {url}")
            self._track(record_id, processing_stage=Stage.EXTRACTING)
            amount = self.vision.extract_total(url, cancel=cancel)
            self._save_amount(record_id, amount, url, cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            LOG.error(f"Error processing {file_name}: {e}")
            self._track_failed(record_id, str(e))
            return ProcessingResult(file_name, False, record_id=record_id, error=str(e))
        self._track_complete(record_id, started)
        return ProcessingResult(file_name, True, record_id=record_id, amount=amount)

    def process_receipts(
        self, file_names: List[str], *, cancel: Optional[threading.Event] = None
    ) -> BatchReport:
        return self._run(list(file_names), self._process_receipt, label="receipt", cancel=cancel)

    # ---------- audio ----------
    def pending_audio(self) -> List[Dict[str, Any]]:
        """Rows with an audio file and no summary yet."""
        return self.store.select(
            REFUND_REQUESTS,
            [
                Filter("audio_url", "is", None, negate=True),
                Filter("audio_url", "neq", ""),
                Filter("summary", "is", None),
            ],
            order=("id", True),
        )

    def _already_summarized(self, record_id: Any) -> bool:
        rows = self.store.select(REFUND_REQUESTS, _by_id(record_id), columns="id,summary", limit=1)
        return bool(rows) and rows[0].get("summary") is not None

    def _process_audio_row(self, row: Dict[str, Any], cancel: Optional[threading.Event]) -> ProcessingResult:
        record_id = row.get("id")
        ident = f"refund_request {record_id}"
        url = row.get("audio_url") or ""
        ext = os.path.splitext(urlparse(url).path)[1] or ".mp3"
        started = self.clock()
        local: Optional[str] = None
        try:
            # Rows can be summarized by another run while this batch is waiting.
            if row.get("summary") is not None or self._already_summarized(record_id):
                LOG.info(f"Skipping id={record_id}: summary already present")
                return ProcessingResult(ident, False, record_id=record_id, skipped=True)
            LOG.info(f"Processing audio for id={record_id}: {url}")
            if self.transcriber is None or self.summarizer is None:
                raise RuntimeError("Audio models are not configured")
            self._track(
                record_id,
                status=RequestStatus.PROCESSING,
                processing_stage=Stage.DOWNLOADING,
                processing_started=_now_iso(),
            )
            local = self._retry(
                lambda: self.fetcher.fetch_to_file(url, f"audio_{record_id}{ext}"), "fetch audio", cancel
            )
            self._track(record_id, processing_stage=Stage.TRANSCRIBING)
            transcript = self.transcriber.transcribe(local, record_id)
            check_cancelled(cancel)
            self.sleep(self.settings.stage_delay)
            self._track(record_id, processing_stage=Stage.SUMMARIZING)
            summary = self.summarizer.summarize(transcript.text)
            combined = combine_transcript(transcript.text, summary.text)
            self._retry(
                lambda: self.store.update(REFUND_REQUESTS, {"summary": combined}, _by_id(record_id)),
                "save summary",
                cancel,
            )
        except OperationCancelled:
            raise
        except Exception as e:
            LOG.error(f"Error processing audio for id={record_id}: {e}")
            self._track_failed(record_id, str(e))
            return ProcessingResult(ident, False, record_id=record_id, error=str(e))
        finally:
            if local and os.path.exists(local):
                try:
                    os.remove(local)
                except OSError as e:
                    LOG.warning(f"Could not remove temp file {local}: {e}")
        self._track_complete(record_id, started)
        LOG.info(f"Saved summary for id={record_id}")
        return ProcessingResult(
            ident,
            True,
            record_id=record_id,
            transcription_length=len(transcript.text),
            summary_length=len(summary.text),
            used_fallback=transcript.fallback or summary.fallback,
        )

    def process_audio(
        self, *, single: bool = False, cancel: Optional[threading.Event] = None
    ) -> BatchReport:
        rows = self.pending_audio()
        if single:
            rows = rows[:1]
        if not rows:
            LOG.info("No pending audio rows")
        return self._run(rows, self._process_audio_row, label="audio", cancel=cancel)
