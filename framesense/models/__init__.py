"""ORM models for the durable cache tier."""

from framesense.models.cache_entry import CacheEntryRecord

__all__ = ["CacheEntryRecord"]
