"""
Store Factory — Create the brand store backend from configuration.

Configuration in settings.yaml:
    database:
      # Brand store backend
      #   "memory"   — In-memory dicts (development, testing)
      store_backend: "memory"

The production relational store lives in the web application; deployments
plug their own BaseBrandStore implementation into JobSystem(store=...).
"""
from __future__ import annotations

from typing import Any

import structlog

from database.store_base import BaseBrandStore

logger = structlog.get_logger()


def create_store(config: dict[str, Any] = None) -> BaseBrandStore:
    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend != "memory":
        raise ValueError(
            f"Unsupported store backend {backend!r}; pass a BaseBrandStore implementation instead"
        )

    from database.store_memory import InMemoryBrandStore
    store = InMemoryBrandStore()
    logger.info("store_created", backend=backend)
    return store
