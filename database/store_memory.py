"""
InMemoryBrandStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with BaseBrandStore
  - Safe within a single event loop (no awaits inside mutations)
  - All data lost on process restart
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

import structlog

from database.store_base import BaseBrandStore
from models.schemas import BrandSession, CreatorProfile, JobRecord, utcnow

logger = structlog.get_logger()


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class InMemoryBrandStore(BaseBrandStore):

    def __init__(self):
        self._sessions: dict[str, BrandSession] = {}          # brand_id → session
        self._profiles: dict[str, CreatorProfile] = {}        # user_id → profile
        self._assets: dict[str, list[dict[str, Any]]] = {}    # job_id → asset rows
        self._records: dict[str, JobRecord] = {}              # job_id → record
        logger.info("inmemory_brand_store_initialized")

    # ── Sessions ──────────────────────────────────────────

    async def get_session(self, brand_id: str) -> Optional[BrandSession]:
        session = self._sessions.get(brand_id)
        return session.model_copy() if session else None

    async def upsert_session(self, session: BrandSession) -> BrandSession:
        self._sessions[session.brand_id] = session.model_copy()
        return session

    async def find_abandonment_candidates(
        self, inactive_before: datetime, terminal_step: str, limit: int = 100,
    ) -> list[BrandSession]:
        candidates = [
            s for s in self._sessions.values()
            if s.last_activity < inactive_before
            and s.current_step != terminal_step
            and not s.abandoned
        ]
        candidates.sort(key=lambda s: s.last_activity)
        return [s.model_copy() for s in candidates[:limit]]

    async def mark_abandoned(self, brand_id: str) -> bool:
        session = self._sessions.get(brand_id)
        if session is None or session.abandoned:
            return False
        session.abandoned = True
        return True

    # ── Profiles ──────────────────────────────────────────

    async def get_profile(self, user_id: str) -> Optional[CreatorProfile]:
        return self._profiles.get(user_id)

    async def upsert_profile(self, profile: CreatorProfile) -> CreatorProfile:
        self._profiles[profile.user_id] = profile
        return profile

    # ── Generated assets ──────────────────────────────────

    async def save_job_assets(
        self, job_id: str, brand_id: str, asset_type: str, assets: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        now = utcnow().isoformat()
        rows = [
            {
                "id": _new_id(), "brand_id": brand_id, "asset_type": asset_type,
                "job_id": job_id, "is_selected": False, "created_at": now, **asset,
            }
            for asset in assets
        ]
        self._assets[job_id] = rows
        return rows

    async def attach_upload(
        self, brand_id: str, source_url: str, public_url: str, storage_path: str,
    ) -> int:
        updated = 0
        for rows in self._assets.values():
            for row in rows:
                if row["brand_id"] == brand_id and row.get("url") == source_url:
                    row["url"] = public_url
                    row["metadata"] = {
                        **row.get("metadata", {}),
                        "storage_path": storage_path,
                        "original_url": source_url,
                        "upload_completed": True,
                    }
                    updated += 1
        return updated

    async def get_brand_assets(self, brand_id: str, asset_type: str = "") -> list[dict[str, Any]]:
        return [
            row for rows in self._assets.values() for row in rows
            if row["brand_id"] == brand_id and (not asset_type or row["asset_type"] == asset_type)
        ]

    # ── Job records ───────────────────────────────────────

    async def save_job_record(self, record: JobRecord) -> None:
        record.updated_at = utcnow()
        self._records[record.job_id] = record

    async def get_job_record(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)
