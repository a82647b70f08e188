"""
Abandonment Detector — finds stalled wizard sessions and nudges their creators.

Runs hourly as a `cleanup` job of type `detect-abandonment`. A session is a
candidate when it has been idle past the inactivity threshold, its wizard is
not at the terminal step, and it is not already marked abandoned. The marker
is flipped after the notifications are dispatched, so a session is processed
at most once.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from abandonment.tokens import ResumeTokenSigner
from database.store_base import BaseBrandStore
from job_queue.dispatch import Dispatcher
from job_queue.registry import Queues
from models.schemas import BrandSession, utcnow

logger = structlog.get_logger()

WIZARD_STEPS = (
    "phone-terms",
    "social-handles",
    "social-analysis",
    "brand-identity",
    "logo-style",
    "logo-generation",
    "product-selection",
    "mockup-generation",
    "bundle-builder",
    "profit-projections",
    "checkout",
    "completion",
)
TERMINAL_STEP = WIZARD_STEPS[-1]


def calculate_progress(step: str) -> int:
    """Wizard completion percentage for a step name; 0 for unknown steps."""
    if step not in WIZARD_STEPS:
        return 0
    return round((WIZARD_STEPS.index(step) + 1) / len(WIZARD_STEPS) * 100)


@dataclass
class AbandonmentReport:
    processed: int = 0
    errors: int = 0
    candidates: int = 0

    def to_dict(self) -> dict:
        return {"processed": self.processed, "errors": self.errors, "candidates": self.candidates}


class AbandonmentDetector:

    def __init__(
        self,
        store: BaseBrandStore,
        dispatcher: Dispatcher,
        signer: ResumeTokenSigner,
        app_url: str,
        inactivity_seconds: int = 24 * 60 * 60,
        batch_limit: int = 100,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.signer = signer
        self.app_url = app_url.rstrip("/")
        self.inactivity_seconds = inactivity_seconds
        self.batch_limit = batch_limit

    def resume_url(self, session: BrandSession, step: str) -> str:
        token = self.signer.sign(session.brand_id, session.user_id, step)
        return f"{self.app_url}/wizard/resume?token={token}"

    async def run(self, now: Optional[datetime] = None) -> AbandonmentReport:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.inactivity_seconds)
        logger.info("abandonment_scan_started", inactive_before=cutoff.isoformat())

        sessions = await self.store.find_abandonment_candidates(
            inactive_before=cutoff, terminal_step=TERMINAL_STEP, limit=self.batch_limit,
        )
        report = AbandonmentReport(candidates=len(sessions))
        if not sessions:
            logger.info("abandonment_scan_empty")
            return report

        for session in sessions:
            try:
                if await self._process(session):
                    report.processed += 1
                else:
                    report.errors += 1
            except Exception as e:
                report.errors += 1
                logger.error("abandonment_session_error", brand_id=session.brand_id, error=str(e))

        logger.info("abandonment_scan_complete", **report.to_dict())
        return report

    async def _process(self, session: BrandSession) -> bool:
        last_step = session.current_step or "unknown"
        progress_percent = calculate_progress(last_step)

        profile = await self.store.get_profile(session.user_id)
        if profile is None or not profile.email:
            logger.warning("abandonment_no_email",
                           brand_id=session.brand_id,
                           user_id=session.user_id)
            return False

        resume_url = self.resume_url(session, last_step)

        await self._notify(Queues.CRM_SYNC, session, f"abandon-crm-{session.brand_id}", {
            "user_id": session.user_id,
            "event_type": "wizard.abandoned",
            "data": {"last_step": last_step, "brand_id": session.brand_id},
        })
        await self._notify(Queues.EMAIL_SEND, session, f"abandon-email-{session.brand_id}", {
            "to": profile.email,
            "template": "wizard-abandoned",
            "data": {
                "user_name": profile.first_name,
                "resume_url": resume_url,
                "last_step": last_step,
                "progress_percent": progress_percent,
            },
            "user_id": session.user_id,
        })

        await self.store.mark_abandoned(session.brand_id)
        logger.info("abandonment_session_processed",
                    brand_id=session.brand_id,
                    user_id=session.user_id,
                    last_step=last_step,
                    progress_percent=progress_percent)
        return True

    async def _notify(self, queue_name: str, session: BrandSession, job_id: str, payload: dict) -> None:
        # Notification failures are not fatal to the scan
        try:
            await self.dispatcher.dispatch(queue_name, payload, job_id=job_id)
        except Exception as e:
            logger.warning("abandonment_dispatch_failed",
                           queue=queue_name,
                           brand_id=session.brand_id,
                           error=str(e))
