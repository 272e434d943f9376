from __future__ import annotations

import base64
import random
import threading
import time
from typing import Callable, Optional

import openai

from ..domain.errors import ExtractionFailed, RateLimitExceeded, ServiceError
from ..domain.normalize import parse_amount
from ..logging import get_logger
from .backoff import with_retry
from .fetch import MediaFetcher
from .llm import ChatModel

LOG = get_logger("orchestrator-vision")

RECEIPT_PROMPT = (
    "Please analyze this receipt image and extract ONLY the total amount. "
    "Return just the numeric value (e.g., 125.99) with no additional text, currency "
    "symbols, or explanations. Look for words like 'Total', 'Amount Due', 'Balance', "
    "or similar indicators."
)


class ReceiptVision:
    """Read the total amount off a receipt image with a vision-capable model."""

    def __init__(
        self,
        model: ChatModel,
        fetcher: MediaFetcher,
        *,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.model = model
        self.fetcher = fetcher
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.rng = rng

    def _retry(self, op, label: str, cancel: Optional[threading.Event]):
        return with_retry(
            op,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self.sleep,
            rng=self.rng,
            cancel=cancel,
            label=label,
        )

    def _ask(self, data_url: str) -> float:
        text = self.model.chat(
            [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": RECEIPT_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            temperature=0.0,
        )
        LOG.info(f"Raw vision response: {text!r}")
        amount = parse_amount(text)
        if amount is None:
            raise ExtractionFailed(f"Could not extract a valid total amount from the receipt: {text!r}")
        return amount

    def extract_total(self, image_url: str, *, cancel: Optional[threading.Event] = None) -> float:
        """Return the receipt total for `image_url`.

        Fetch errors propagate as raised by the fetcher. Model failures are
        retried; exhaustion yields RateLimitExceeded or ExtractionFailed.
        """
        data, mime = self._retry(lambda: self.fetcher.fetch_bytes(image_url), "fetch image", cancel)
        b64 = base64.b64encode(data).decode("ascii")
        data_url = f"data:{mime};base64,{b64}"
        LOG.info(f"Sending image ({len(data)} bytes) to {self.model.model}")
        try:
            amount = self._retry(lambda: self._ask(data_url), "vision extract", cancel)
        except (RateLimitExceeded, ExtractionFailed):
            raise
        except (ServiceError, openai.APIError) as e:
            raise ExtractionFailed(f"Receipt analysis failed: {e}") from e
        LOG.info(f"Extracted amount: {amount}")
        return amount
