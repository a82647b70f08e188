"""
Tests for the Abandonment Detector.

Covers:
  - Progress percentage
  - Candidate selection (idle, non-terminal, not yet marked)
  - Notification jobs and resume links
  - At-most-once processing per session
  - Graceful degradation (missing email, dispatch failures)
"""
from datetime import timedelta

import pytest

from abandonment.detector import (
    TERMINAL_STEP, WIZARD_STEPS, AbandonmentDetector, calculate_progress,
)
from abandonment.tokens import ResumeTokenSigner
from models.schemas import BrandSession, CreatorProfile, utcnow

APP_URL = "https://app.brandflow.test"


class FailingDispatcher:
    def __init__(self):
        self.attempts = []

    async def dispatch(self, queue_name, payload, **options):
        self.attempts.append(queue_name)
        raise ConnectionError("broker unavailable")


@pytest.fixture
def signer():
    return ResumeTokenSigner("test-secret")


@pytest.fixture
def detector(store, dispatcher, signer):
    return AbandonmentDetector(store, dispatcher, signer, app_url=APP_URL)


async def _session(store, user_id, brand_id, hours_idle=25, step="logo-style", abandoned=False):
    session = BrandSession(
        brand_id=brand_id, user_id=user_id, current_step=step,
        last_activity=utcnow() - timedelta(hours=hours_idle), abandoned=abandoned,
    )
    await store.upsert_session(session)
    return session


async def _profile(store, user_id, email="ada@example.com", full_name="Ada Lovelace"):
    await store.upsert_profile(CreatorProfile(user_id=user_id, email=email, full_name=full_name))


class TestProgress:
    def test_twelve_steps_ending_in_completion(self):
        assert len(WIZARD_STEPS) == 12
        assert TERMINAL_STEP == "completion"

    @pytest.mark.parametrize("step,percent", [
        ("phone-terms", 8),
        ("logo-style", 42),
        ("checkout", 92),
        ("completion", 100),
        ("not-a-step", 0),
    ])
    def test_calculate_progress(self, step, percent):
        assert calculate_progress(step) == percent


class TestScenario:
    @pytest.mark.asyncio
    async def test_stalled_session_notified_once(self, detector, store, broker, signer, user_id, brand_id):
        await _session(store, user_id, brand_id)
        await _profile(store, user_id)

        report = await detector.run()
        assert report.to_dict() == {"processed": 1, "errors": 0, "candidates": 1}

        crm = await broker.get_job("crm-sync", f"abandon-crm-{brand_id}")
        email = await broker.get_job("email-send", f"abandon-email-{brand_id}")
        assert crm.payload["event_type"] == "wizard.abandoned"
        assert crm.payload["data"] == {"last_step": "logo-style", "brand_id": brand_id}
        assert email.payload["to"] == "ada@example.com"
        assert email.payload["template"] == "wizard-abandoned"
        assert email.payload["data"]["user_name"] == "Ada"
        assert email.payload["data"]["progress_percent"] == 42
        assert (await store.get_session(brand_id)).abandoned is True

        again = await detector.run()
        assert again.candidates == 0
        assert await broker.count("crm-sync") == 1
        assert await broker.count("email-send") == 1

    @pytest.mark.asyncio
    async def test_resume_link_carries_valid_token(self, detector, store, broker, signer, user_id, brand_id):
        await _session(store, user_id, brand_id, step="product-selection")
        await _profile(store, user_id)
        await detector.run()

        email = await broker.get_job("email-send", f"abandon-email-{brand_id}")
        url = email.payload["data"]["resume_url"]
        assert url.startswith(f"{APP_URL}/wizard/resume?token=")

        payload = signer.verify(url.split("token=", 1)[1], user_id=user_id)
        assert payload.brand_id == brand_id
        assert payload.step == "product-selection"

    @pytest.mark.asyncio
    async def test_job_ids_dedupe_across_overlapping_scans(self, store, dispatcher, broker, signer,
                                                           user_id, brand_id):
        """Two detectors racing on the same session enqueue one job per queue."""
        await _session(store, user_id, brand_id)
        await _profile(store, user_id)
        first = AbandonmentDetector(store, dispatcher, signer, app_url=APP_URL)
        candidates = await store.find_abandonment_candidates(utcnow(), TERMINAL_STEP)

        await first._process(candidates[0])
        await first._process(candidates[0])
        assert await broker.count("email-send") == 1


class TestCandidateSelection:
    @pytest.mark.asyncio
    async def test_recent_session_skipped(self, detector, store, user_id, brand_id):
        await _session(store, user_id, brand_id, hours_idle=2)
        await _profile(store, user_id)
        assert (await detector.run()).candidates == 0

    @pytest.mark.asyncio
    async def test_completed_wizard_skipped(self, detector, store, user_id, brand_id):
        await _session(store, user_id, brand_id, step="completion")
        await _profile(store, user_id)
        assert (await detector.run()).candidates == 0

    @pytest.mark.asyncio
    async def test_already_abandoned_skipped(self, detector, store, user_id, brand_id):
        await _session(store, user_id, brand_id, abandoned=True)
        await _profile(store, user_id)
        assert (await detector.run()).candidates == 0

    @pytest.mark.asyncio
    async def test_batch_limit(self, store, dispatcher, signer, user_id):
        for i in range(3):
            await _session(store, user_id, f"00000000-0000-4000-8000-00000000000{i}")
        await _profile(store, user_id)
        detector = AbandonmentDetector(store, dispatcher, signer, app_url=APP_URL, batch_limit=2)

        assert (await detector.run()).processed == 2
        assert (await detector.run()).processed == 1

    @pytest.mark.asyncio
    async def test_custom_threshold(self, store, dispatcher, signer, user_id, brand_id):
        await _session(store, user_id, brand_id, hours_idle=2)
        await _profile(store, user_id)
        detector = AbandonmentDetector(store, dispatcher, signer, app_url=APP_URL, inactivity_seconds=3600)
        assert (await detector.run()).processed == 1


class TestDegradation:
    @pytest.mark.asyncio
    async def test_missing_profile_counts_error(self, detector, store, broker, user_id, brand_id):
        await _session(store, user_id, brand_id)
        report = await detector.run()
        assert report.errors == 1
        assert report.processed == 0
        assert await broker.count("email-send") == 0

    @pytest.mark.asyncio
    async def test_missing_email_counts_error(self, detector, store, user_id, brand_id):
        await _session(store, user_id, brand_id)
        await _profile(store, user_id, email="")
        assert (await detector.run()).errors == 1

    @pytest.mark.asyncio
    async def test_dispatch_failure_not_fatal(self, store, signer, user_id, brand_id):
        await _session(store, user_id, brand_id)
        await _profile(store, user_id)
        failing = FailingDispatcher()
        detector = AbandonmentDetector(store, failing, signer, app_url=APP_URL)

        report = await detector.run()
        assert report.processed == 1
        assert failing.attempts == ["crm-sync", "email-send"]
        assert (await store.get_session(brand_id)).abandoned is True

    @pytest.mark.asyncio
    async def test_one_bad_session_does_not_stop_scan(self, detector, store, broker, user_id):
        good, bad = "00000000-0000-4000-8000-000000000001", "00000000-0000-4000-8000-000000000002"
        await _session(store, user_id, good, hours_idle=30)
        await _session(store, "no-profile-user", bad, hours_idle=26)
        await _profile(store, user_id)

        report = await detector.run()
        assert report.to_dict() == {"processed": 1, "errors": 1, "candidates": 2}
        assert (await store.get_session(good)).abandoned is True
        assert (await store.get_session(bad)).abandoned is False
