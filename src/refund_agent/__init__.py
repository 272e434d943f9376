"""
Refund agent: natural-language front end over the refund/employee store.

The package routes free-text queries either to a constrained database query
compiler or to the receipt/audio processing pipelines that talk to the
vision, speech-to-text and chat models.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]

__version__ = "0.1.0"
