"""
Abstract Brand Store — the slice of the relational store the job system uses.

The brand/profile tables belong to the web application. Job handlers and the
abandonment detector only need:
  - wizard sessions (last activity, current step, abandoned marker)
  - creator profiles (email, name) for notifications
  - brand assets written by generation handlers, keyed by job id
  - terminal job records, so a reconnecting client can poll the result
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import BrandSession, CreatorProfile, JobRecord


class BaseBrandStore(ABC):
    """Interface that all brand store backends must implement."""

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session(self, brand_id: str) -> Optional[BrandSession]:
        ...

    @abstractmethod
    async def upsert_session(self, session: BrandSession) -> BrandSession:
        ...

    @abstractmethod
    async def find_abandonment_candidates(
        self, inactive_before: datetime, terminal_step: str, limit: int = 100,
    ) -> list[BrandSession]:
        """Sessions idle since before `inactive_before`, not at the terminal step, not yet abandoned."""
        ...

    @abstractmethod
    async def mark_abandoned(self, brand_id: str) -> bool:
        """Flip the abandoned marker. Returns False if it was already set."""
        ...

    # ── Profiles ──────────────────────────────────────────────

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[CreatorProfile]:
        ...

    @abstractmethod
    async def upsert_profile(self, profile: CreatorProfile) -> CreatorProfile:
        ...

    # ── Generated assets ──────────────────────────────────────

    @abstractmethod
    async def save_job_assets(
        self, job_id: str, brand_id: str, asset_type: str, assets: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Replace the assets produced by `job_id` (idempotent across retries)."""
        ...

    @abstractmethod
    async def attach_upload(
        self, brand_id: str, source_url: str, public_url: str, storage_path: str,
    ) -> int:
        """Point assets generated from `source_url` at their permanent copy. Returns rows updated."""
        ...

    @abstractmethod
    async def get_brand_assets(self, brand_id: str, asset_type: str = "") -> list[dict[str, Any]]:
        ...

    # ── Job records ───────────────────────────────────────────

    @abstractmethod
    async def save_job_record(self, record: JobRecord) -> None:
        ...

    @abstractmethod
    async def get_job_record(self, job_id: str) -> Optional[JobRecord]:
        ...
