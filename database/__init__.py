"""
Database layer — brand store used by job handlers and abandonment detection.

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_session(brand_id)
"""
from database.store_base import BaseBrandStore
from database.store_memory import InMemoryBrandStore
from database.store_factory import create_store

__all__ = [
    "BaseBrandStore",
    "InMemoryBrandStore",
    "create_store",
]
