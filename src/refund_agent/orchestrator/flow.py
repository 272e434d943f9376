"""Query routing: classify a free-text query and run the matching pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import (
    load_groq as _cfg_load_groq,
    load_openai as _cfg_load_openai,
    load_scratch_dir as _cfg_load_scratch_dir,
    load_supabase as _cfg_load_supabase,
    load_tuning as _cfg_load_tuning,
    load_vision as _cfg_load_vision,
)
from ..domain.errors import ConfigError, OperationCancelled, RefundAgentError, SlotBusy
from ..domain.models import REFUND_REQUESTS, Filter, Intent, IntentType, RefundRequest
from ..logging import get_logger
from ..paths import find_project_root, scratch_dir
from ..supabase import SupabaseStore
from .batch import BatchOrchestrator, BatchSettings
from .fetch import MediaFetcher
from .intent import IntentClassifier
from .llm import ChatModel, make_openai_client
from .query import QueryCompiler
from .slot import TaskSlot
from .summarize import Summarizer
from .transcribe import Transcriber
from .vision import ReceiptVision

LOG = get_logger("orchestrator-flow")


@dataclass(frozen=True)
class AgentConfig:
    repo_root: str
    scratch_dir: str
    supabase_url: str
    supabase_key: str
    bucket: str
    groq_api_key: str
    groq_base_url: str
    groq_model: str
    openai_api_key: Optional[str]
    whisper_model: str
    vision_api_key: Optional[str]
    vision_base_url: str
    vision_model: str
    http_timeout: float
    item_delay: float
    stage_delay: float
    max_retries: int
    backoff_base: float
    backoff_max: float
    batch_size: int
    batch_pause: float
    track_status: bool


def build_agent_config(start_dir: str) -> AgentConfig:
    """Resolve settings from env/.env and log a short banner.

    Supabase and Groq credentials are mandatory (ConfigError). Without the
    OpenAI or Gemini key the audio or receipt pipeline is disabled.
    """
    url, key, bucket = _cfg_load_supabase(start_dir)
    groq_key, groq_base, groq_model = _cfg_load_groq(start_dir)
    try:
        openai_key, whisper_model = _cfg_load_openai(start_dir)
    except ConfigError as e:
        LOG.warning(f"{e}; audio transcription disabled")
        openai_key, whisper_model = None, "whisper-1"
    try:
        vision_key, vision_base, vision_model = _cfg_load_vision(start_dir)
    except ConfigError as e:
        LOG.warning(f"{e}; receipt extraction disabled")
        vision_key, vision_base, vision_model = None, "", ""
    tuning = _cfg_load_tuning(start_dir)

    repo_root = find_project_root(start_dir)
    tmp = scratch_dir(repo_root, _cfg_load_scratch_dir(start_dir))

    LOG.info("Agent configuration prepared")
    LOG.info(f"Supabase URL       : {url}")
    LOG.info(f"Storage bucket     : {bucket}")
    LOG.info(f"Chat model         : {groq_model}")
    LOG.info(f"Whisper model      : {whisper_model if openai_key else 'disabled'}")
    LOG.info(f"Vision model       : {vision_model if vision_key else 'disabled'}")
    LOG.info(f"Scratch directory  : {tmp}")
    LOG.info(f"HTTP timeout       : {tuning['http_timeout']}s")
    LOG.info(f"Item delay         : {tuning['item_delay']}s")

    return AgentConfig(
        repo_root=repo_root,
        scratch_dir=tmp,
        supabase_url=url,
        supabase_key=key,
        bucket=bucket,
        groq_api_key=groq_key,
        groq_base_url=groq_base,
        groq_model=groq_model,
        openai_api_key=openai_key,
        whisper_model=whisper_model,
        vision_api_key=vision_key,
        vision_base_url=vision_base,
        vision_model=vision_model,
        http_timeout=float(tuning["http_timeout"]),
        item_delay=float(tuning["item_delay"]),
        stage_delay=float(tuning["stage_delay"]),
        max_retries=int(tuning["max_retries"]),
        backoff_base=float(tuning["backoff_base"]),
        backoff_max=float(tuning["backoff_max"]),
        batch_size=int(tuning["batch_size"]),
        batch_pause=float(tuning["batch_pause"]),
        track_status=bool(tuning["track_status"]),
    )


class RefundAgent:
    """High-level router that wires classifier, query compiler and batch pipelines."""

    def __init__(
        self,
        *,
        store: Any,
        classifier: IntentClassifier,
        compiler: QueryCompiler,
        batch: BatchOrchestrator,
        slot: Optional[TaskSlot] = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.compiler = compiler
        self.batch = batch
        self.slot = slot or TaskSlot()

    @classmethod
    def from_config(cls, config: AgentConfig) -> "RefundAgent":
        store = SupabaseStore.connect(config.supabase_url, config.supabase_key, config.bucket)
        chat = ChatModel(
            make_openai_client(config.groq_api_key, base_url=config.groq_base_url, timeout=config.http_timeout),
            config.groq_model,
            name="groq",
        )
        fetcher = MediaFetcher(config.scratch_dir, timeout=config.http_timeout)
        retry = dict(
            max_attempts=config.max_retries,
            base_delay=config.backoff_base,
            max_delay=config.backoff_max,
        )

        vision = None
        if config.vision_api_key:
            vision_chat = ChatModel(
                make_openai_client(
                    config.vision_api_key, base_url=config.vision_base_url, timeout=config.http_timeout
                ),
                config.vision_model,
                name="vision",
            )
            vision = ReceiptVision(vision_chat, fetcher, **retry)

        transcriber = None
        if config.openai_api_key:
            transcriber = Transcriber(
                make_openai_client(config.openai_api_key, timeout=config.http_timeout),
                config.whisper_model,
            )

        settings = BatchSettings(
            item_delay=config.item_delay,
            stage_delay=config.stage_delay,
            batch_size=config.batch_size,
            batch_pause=config.batch_pause,
            track_status=config.track_status,
            **retry,
        )
        batch = BatchOrchestrator(
            store, fetcher, vision, transcriber, Summarizer(chat), settings=settings
        )
        LOG.info("RefundAgent ready")
        return cls(
            store=store,
            classifier=IntentClassifier(chat),
            compiler=QueryCompiler(chat, store, **retry),
            batch=batch,
        )

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------
    def run_query(self, query: str) -> Dict[str, Any]:
        return self.compiler.run(query).as_dict()

    def process_receipts(self, file_names: List[str]) -> Dict[str, Any]:
        with self.slot.acquire("receipt_processing") as op:
            report = self.batch.process_receipts(file_names, cancel=op.cancel)
        return {
            "success": report.failed == 0,
            "message": f"Processed {report.success}/{report.total} receipt(s)",
            "file_names": list(file_names),
            "report": report.as_dict(),
        }

    def process_audio(self, *, single: bool = False) -> Dict[str, Any]:
        with self.slot.acquire("audio_processing") as op:
            report = self.batch.process_audio(single=single, cancel=op.cancel)
        return {
            "success": report.failed == 0,
            "message": f"Processed {report.success}/{report.total - report.skipped} audio file(s)",
            "report": report.as_dict(),
        }

    def _summary_rows(self) -> List[Dict[str, Any]]:
        return self.store.select(
            REFUND_REQUESTS, [Filter("summary", "is", None, negate=True)], order=("id", True)
        )

    def audio_summaries(self) -> Dict[str, Any]:
        """List stored summaries, processing pending audio first when none exist yet."""
        rows = self._summary_rows()
        if not rows and self.batch.pending_audio():
            LOG.info("No summaries yet; processing pending audio first")
            self.process_audio()
            rows = self._summary_rows()
        summaries = []
        for row in rows:
            req = RefundRequest.from_row(row)
            summaries.append(
                {"id": req.id, "name": req.name, "audio_url": req.audio_url, "summary": req.summary_text()}
            )
        return {"success": True, "count": len(summaries), "summaries": summaries}

    def receipt_url(self, file_name: str) -> Dict[str, Any]:
        url = self.store.public_url(file_name)
        LOG.info(f"Public URL for {file_name}: {url}")
        return {"success": True, "file_name": file_name, "url": url}

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    def dispatch(self, intent: Intent, query: str) -> Dict[str, Any]:
        if intent.type is IntentType.RECEIPT_PROCESSING:
            return self.process_receipts(intent.file_names)
        if intent.type is IntentType.AUDIO_PROCESSING:
            return self.process_audio()
        if intent.type is IntentType.AUDIO_SUMMARY:
            return self.audio_summaries()
        if intent.type is IntentType.RECEIPT_URL:
            return self.receipt_url(intent.file_name or "")
        return self.run_query(query)

    def handle(self, query: str) -> Dict[str, Any]:
        """Classify and run one query. Raises SlotBusy; other package errors are returned."""
        intent = self.classifier.classify(query)
        LOG.info(f"Intent: {intent.type.value} {intent.file_names or intent.file_name or ''}".rstrip())
        try:
            result = self.dispatch(intent, query)
        except SlotBusy:
            raise
        except OperationCancelled as e:
            LOG.warning(f"{intent.type.value} cancelled")
            result = {"success": False, "error": str(e)}
        except RefundAgentError as e:
            LOG.error(f"{intent.type.value} failed: {e}")
            result = {"success": False, "error": str(e)}
        result["intent"] = intent.as_dict()
        return result
