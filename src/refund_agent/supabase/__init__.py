from .client import SupabaseStore

__all__ = ["SupabaseStore"]
