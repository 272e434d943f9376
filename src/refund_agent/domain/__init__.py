"""Domain data model, error taxonomy and pure helpers."""

__all__ = ["errors", "models", "normalize"]
