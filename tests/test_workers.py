"""
Tests for the job handlers, run directly against a JobContext with the
logging connectors and in-memory stores.
"""
import asyncio
from datetime import timedelta

import pytest

from backend.connector import LoggingGenerationProvider
from job_queue.errors import HandlerError
from job_queue.registry import Queues, QueueRegistry
from job_queue.worker import JobContext
from models.schemas import (
    BrandSession, Job, JobState, RetentionPolicy, RetentionRule, utcnow,
)
from progress.bridge import brand_room
from workers import HandlerDeps, build_handlers
from workers.generation import (
    BrandWizardHandler, LogoGenerationHandler, MockupGenerationHandler,
    VideoGenerationHandler, compose_logo_prompts,
)
from workers.maintenance import CleanupHandler
from workers.notifications import CrmSyncHandler, EmailSendHandler, render_email
from workers.uploads import ImageUploadHandler

APP_URL = "https://app.brandflow.test"


class FlakyProvider(LoggingGenerationProvider):
    """Fails every image whose prompt contains one of `failing` markers."""

    def __init__(self, failing=()):
        super().__init__()
        self.failing = failing

    async def generate_image(self, prompt, **kwargs):
        if any(marker in prompt for marker in self.failing):
            raise HandlerError("model overloaded")
        return await super().generate_image(prompt, **kwargs)


@pytest.fixture
def deps(store, connectors, broker, registry):
    return HandlerDeps(store=store, connectors=connectors, broker=broker, registry=registry, app_url=APP_URL)


@pytest.fixture
def make_ctx(dispatcher, broker, registry, bridge):
    def _make(queue_name, payload, job_id=None, validate=True):
        data = dispatcher.validator.validate(queue_name, payload) if validate else payload
        job = Job(id=job_id or f"{queue_name}-test", queue_name=queue_name, payload=data,
                  state=JobState.ACTIVE)
        return JobContext(job, registry.lookup(queue_name), broker, bridge, dispatcher)
    return _make


@pytest.fixture
def mockup_payload(user_id, brand_id):
    return {
        "user_id": user_id,
        "brand_id": brand_id,
        "product_id": "6f1c2d8e-4b9a-4c1e-9d3f-2a7b8c9d0e1f",
        "product_name": "Ceramic Mug",
        "product_category": "drinkware",
        "brand_name": "Sunny Side Studio",
        "logo_url": "https://cdn.example.com/logo.png",
        "color_palette": ["#FFB703"],
    }


def test_build_handlers_covers_every_queue(deps, registry):
    assert set(build_handlers(deps)) == set(registry.list_names())


# ──────────────────────────────────────────────────────────────
#  Logo generation
# ──────────────────────────────────────────────────────────────

class TestLogoPrompts:
    def test_one_prompt_per_logo_with_distinct_variations(self):
        prompts = compose_logo_prompts("Sunny", "bold", ["#000", "#fff"], "Bright mornings", 3)
        assert len(prompts) == 3
        assert len(set(prompts)) == 3
        assert all('"Sunny"' in p and "Style: bold" in p for p in prompts)

    def test_optional_context_included(self):
        prompt = compose_logo_prompts("Sunny", "bold", ["#000"], "v", 1,
                                      archetype="The Creator", refinement_notes="thicker lines")[0]
        assert "Brand archetype: The Creator" in prompt
        assert "Refinement notes: thicker lines" in prompt

    def test_variations_cycle(self):
        prompts = compose_logo_prompts("Sunny", "bold", ["#000"], "v", 8)
        assert len(set(prompts)) == 8


class TestLogoGeneration:
    @pytest.mark.asyncio
    async def test_generates_saves_and_dispatches_uploads(self, deps, make_ctx, store, broker,
                                                         bridge, logo_payload, brand_id):
        sub = bridge.subscribe(brand_room(brand_id))
        ctx = make_ctx("logo-generation", logo_payload, job_id="logo-1")

        result = await LogoGenerationHandler(deps)(ctx)

        assert result["generated"] == 2
        assert result["requested"] == 2
        assets = await store.get_brand_assets(brand_id, "logo")
        assert len(assets) == 2
        assert {a["job_id"] for a in assets} == {"logo-1"}

        uploads = [await broker.get_job("image-upload", f"logo-1-upload-{i}") for i in range(2)]
        assert all(job is not None for job in uploads)
        assert {job.payload["source_url"] for job in uploads} == {a["url"] for a in assets}

        record = await store.get_job_record("logo-1")
        assert record.status == "complete"
        assert ctx.completion_message == "2 logos generated!"

        progress = []
        while sub.pending():
            progress.append((await sub.get())["data"]["progress"])
        assert progress[0] == 5
        assert progress[-1] == 90

    @pytest.mark.asyncio
    async def test_retry_converges_on_same_rows(self, deps, make_ctx, store, broker, logo_payload, brand_id):
        handler = LogoGenerationHandler(deps)
        await handler(make_ctx("logo-generation", logo_payload, job_id="logo-1"))
        await handler(make_ctx("logo-generation", logo_payload, job_id="logo-1"))

        assert len(await store.get_brand_assets(brand_id, "logo")) == 2
        assert await broker.count("image-upload") == 2

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self, deps, make_ctx, store, logo_payload, brand_id):
        deps.connectors.generation = FlakyProvider(failing=("Lettermark",))
        result = await LogoGenerationHandler(deps)(make_ctx("logo-generation", logo_payload))

        assert result["generated"] == 1
        assert result["requested"] == 2
        assert len(await store.get_brand_assets(brand_id)) == 1

    @pytest.mark.asyncio
    async def test_all_failed_raises(self, deps, make_ctx, logo_payload):
        deps.connectors.generation = FlakyProvider(failing=("Variation",))
        with pytest.raises(HandlerError, match="All 2 logo generations failed"):
            await LogoGenerationHandler(deps)(make_ctx("logo-generation", logo_payload))


# ──────────────────────────────────────────────────────────────
#  Other generation queues
# ──────────────────────────────────────────────────────────────

class TestOtherGeneration:
    @pytest.mark.asyncio
    async def test_mockup(self, deps, make_ctx, store, broker, connectors, mockup_payload, brand_id):
        result = await MockupGenerationHandler(deps)(make_ctx("mockup-generation", mockup_payload, job_id="m-1"))

        assert result["mockup"]["asset_type"] == "mockup"
        assert result["mockup"]["metadata"]["product_name"] == "Ceramic Mug"
        upload = await broker.get_job("image-upload", "m-1-upload-0")
        assert upload.payload["asset_type"] == "mockup"
        kind, call = connectors.generation.calls[-1]
        assert kind == "image" and call["kind"] == "mockup"

    @pytest.mark.asyncio
    async def test_video_has_no_upload(self, deps, make_ctx, store, broker, user_id, brand_id):
        result = await VideoGenerationHandler(deps)(make_ctx("video-generation", {
            "user_id": user_id, "brand_id": brand_id, "product_name": "Mug",
            "product_mockup_url": "https://cdn.example.com/mug.png",
            "logo_url": "https://cdn.example.com/logo.png",
            "brand_name": "Sunny", "color_palette": ["#000"],
        }))
        assert result["video"]["url"].endswith(".mp4")
        assert len(await store.get_brand_assets(brand_id, "video")) == 1
        assert await broker.count("image-upload") == 0

    @pytest.mark.asyncio
    async def test_wizard_step_touches_session(self, deps, make_ctx, store, connectors, user_id, brand_id):
        stale = utcnow() - timedelta(hours=3)
        await store.upsert_session(BrandSession(brand_id=brand_id, user_id=user_id,
                                                current_step="brand-identity", last_activity=stale))

        result = await BrandWizardHandler(deps)(make_ctx("brand-wizard", {
            "user_id": user_id, "brand_id": brand_id, "step": "brand-identity",
            "input": {"vibe": "warm"}, "credit_cost": 1,
        }, job_id="wiz-1"))

        assert result["step"] == "brand-identity"
        assert result["output"]["output"] == {"echo": {"vibe": "warm"}}
        assert (await store.get_session(brand_id)).last_activity > stale
        assert connectors.generation.calls == [("agent_step", {"step": "brand-identity", "session_id": None})]
        assert (await store.get_job_record("wiz-1")).status == "complete"


# ──────────────────────────────────────────────────────────────
#  Uploads
# ──────────────────────────────────────────────────────────────

class TestImageUpload:
    @pytest.mark.asyncio
    async def test_upload_repoints_asset(self, deps, make_ctx, store, broker, connectors,
                                         logo_payload, user_id, brand_id):
        await LogoGenerationHandler(deps)(make_ctx("logo-generation", logo_payload, job_id="logo-1"))
        child = await broker.get_job("image-upload", "logo-1-upload-0")
        source = child.payload["source_url"]

        result = await ImageUploadHandler(deps)(make_ctx("image-upload", child.payload, job_id=child.id))

        path = f"{user_id}/{brand_id}/logo/logo-{brand_id}-0.png"
        assert result["storage_path"] == path
        assert result["assets_updated"] == 1
        assert connectors.storage.objects[path] == source

        asset = next(a for a in await store.get_brand_assets(brand_id) if a["url"] == result["public_url"])
        assert asset["metadata"]["original_url"] == source
        assert asset["metadata"]["upload_completed"] is True

    @pytest.mark.asyncio
    async def test_upload_without_asset_row(self, deps, make_ctx, user_id, brand_id):
        result = await ImageUploadHandler(deps)(make_ctx("image-upload", {
            "user_id": user_id, "brand_id": brand_id, "asset_type": "social_asset",
            "source_url": "https://cdn.example.com/post.png", "file_name": "post.png",
        }))
        assert result["uploaded"] is True
        assert result["assets_updated"] == 0


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class TestRenderEmail:
    def test_known_template(self):
        subject, html = render_email("welcome", {"user_name": "Ada"}, APP_URL)
        assert subject == "Welcome to BrandFlow!"
        assert "Hi Ada" in html
        assert f"{APP_URL}/wizard" in html

    def test_values_escaped(self):
        _, html = render_email("welcome", {"user_name": "<script>x</script>"}, APP_URL)
        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_missing_values_render_empty(self):
        _, html = render_email("payment-confirmed", {}, APP_URL)
        assert "Hi there" in html
        assert "{amount}" not in html

    def test_abandoned_template(self):
        _, html = render_email("wizard-abandoned", {
            "user_name": "Ada", "progress_percent": 42, "last_step": "logo-style",
            "resume_url": "https://app.example.com/wizard/resume?token=a.b",
        }, APP_URL)
        assert "42%" in html
        assert "https://app.example.com/wizard/resume?token=a.b" in html


class TestCrmSync:
    @pytest.mark.asyncio
    async def test_event_sent_with_action(self, deps, make_ctx, connectors, user_id):
        result = await CrmSyncHandler(deps)(make_ctx("crm-sync", {
            "user_id": user_id, "event_type": "wizard.abandoned", "data": {"last_step": "logo-style"},
        }))
        assert result["synced"] is True
        event = connectors.crm.events[0]
        assert event["event_type"] == "wizard.abandoned"
        assert event["data"] == {"last_step": "logo-style", "action": "add_tag", "tag": "wizard_abandoned"}

    @pytest.mark.asyncio
    async def test_retry_does_not_resend(self, deps, make_ctx, connectors, user_id):
        payload = {"user_id": user_id, "event_type": "user.created", "data": {}}
        handler = CrmSyncHandler(deps)
        await handler(make_ctx("crm-sync", payload, job_id="crm-1"))
        again = await handler(make_ctx("crm-sync", payload, job_id="crm-1"))

        assert again["duplicate"] is True
        assert len(connectors.crm.events) == 1

    @pytest.mark.asyncio
    async def test_unmapped_event(self, deps, make_ctx, connectors, user_id):
        result = await CrmSyncHandler(deps)(make_ctx("crm-sync", {
            "user_id": user_id, "event_type": "brand.deleted", "data": {},
        }, validate=False))
        assert result["synced"] is False
        assert connectors.crm.events == []


class TestEmailSend:
    @pytest.mark.asyncio
    async def test_sends_rendered_email(self, deps, make_ctx, connectors, email_payload):
        result = await EmailSendHandler(deps)(make_ctx("email-send", email_payload))
        assert result["sent"] is True
        assert result["email_id"].startswith("log-")
        sent = connectors.email.sent[0]
        assert sent["to"] == "creator@example.com"
        assert sent["subject"] == "Welcome to BrandFlow!"

    @pytest.mark.asyncio
    async def test_retry_does_not_resend(self, deps, make_ctx, connectors, email_payload):
        handler = EmailSendHandler(deps)
        await handler(make_ctx("email-send", email_payload, job_id="mail-1"))
        again = await handler(make_ctx("email-send", email_payload, job_id="mail-1"))
        assert again == {"sent": True, "template": "welcome", "duplicate": True}
        assert len(connectors.email.sent) == 1


# ──────────────────────────────────────────────────────────────
#  Cleanup
# ──────────────────────────────────────────────────────────────

class TestCleanup:
    def _registry_for(self, registry, **update):
        policy = registry.lookup(Queues.EMAIL_SEND).model_copy(update=update)
        return QueueRegistry([policy]).freeze()

    @pytest.mark.asyncio
    async def test_expired_jobs(self, deps, make_ctx, broker, registry):
        deps.registry = self._registry_for(registry, retention=RetentionPolicy(
            completed=RetentionRule(count=1, age=3600), failed=RetentionRule(count=1, age=3600),
        ))
        for i in range(3):
            await broker.add(Job(id=f"mail-{i}", queue_name=Queues.EMAIL_SEND))
            await broker.complete(await broker.claim(Queues.EMAIL_SEND, timeout=0.01))

        result = await CleanupHandler(deps)(make_ctx("cleanup", {"type": "expired-jobs"}))
        assert result == {"cleaned": 2, "by_queue": {"email-send": 2}}

    @pytest.mark.asyncio
    async def test_stalled_jobs(self, deps, make_ctx, broker, registry, monkeypatch):
        monkeypatch.setattr("workers.maintenance.STALL_GRACE_SECONDS", 0)
        deps.registry = self._registry_for(registry, timeout=0.01)
        await broker.add(Job(id="mail-stuck", queue_name=Queues.EMAIL_SEND))
        await broker.claim(Queues.EMAIL_SEND, timeout=0.01)
        await asyncio.sleep(0.03)

        result = await CleanupHandler(deps)(make_ctx("cleanup", {"type": "stalled-jobs"}))
        assert result == {"requeued": 1, "by_queue": {"email-send": 1}}
        assert (await broker.get_job(Queues.EMAIL_SEND, "mail-stuck")).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_detect_abandonment_needs_detector(self, deps, make_ctx):
        with pytest.raises(HandlerError) as exc:
            await CleanupHandler(deps)(make_ctx("cleanup", {"type": "detect-abandonment"}))
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_unknown_type(self, deps, make_ctx):
        with pytest.raises(HandlerError) as exc:
            await CleanupHandler(deps)(make_ctx("cleanup", {"type": "vacuum"}, validate=False))
        assert exc.value.retryable is False
