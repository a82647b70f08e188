"""
Generation handlers — paid AI work for the brand wizard.

Logo, mockup and bundle handlers share one shape:
  compose prompt(s) → generate → persist assets keyed by job id
  → dispatch image-upload children → record the outcome.

Child upload jobs use deterministic ids ({job_id}-upload-{n}) and assets
are replaced per job id, so a retried job converges on the same rows.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from job_queue.errors import HandlerError
from job_queue.registry import Queues
from job_queue.worker import JobContext
from models.schemas import JobRecord, utcnow
from workers import HandlerDeps

LOGO_VARIATIONS = (
    "Icon-focused design with abstract symbol",
    "Lettermark design using brand initials",
    "Emblem or badge style",
    "Modern minimalist wordmark",
    "Combination mark (symbol + text)",
    "Geometric abstract logo",
    "Organic hand-drawn feel",
    "Negative space design",
)


def compose_logo_prompts(
    brand_name: str,
    logo_style: str,
    color_palette: list[str],
    brand_vision: str,
    count: int,
    archetype: Optional[str] = None,
    refinement_notes: Optional[str] = None,
) -> list[str]:
    """One prompt per requested logo, cycling through the variation list."""
    base = (
        f'Professional brand logo for "{brand_name}". Style: {logo_style}. '
        f"Colors: {', '.join(color_palette)}. Brand vision: {brand_vision}. "
    )
    if archetype:
        base += f"Brand archetype: {archetype}. "
    if refinement_notes:
        base += f"Refinement notes: {refinement_notes}. "
    base += (
        "Clean vector-style logo on white background, suitable for business use. "
        "No text unless the brand name is the logo. High contrast, scalable design."
    )
    return [f"{base} Variation: {LOGO_VARIATIONS[i % len(LOGO_VARIATIONS)]}." for i in range(count)]


class _GenerationHandler:
    queue_name = ""
    asset_type = ""

    def __init__(self, deps: HandlerDeps):
        self.deps = deps
        self.store = deps.store
        self.provider = deps.connectors.generation

    @staticmethod
    def upload_job_id(ctx: JobContext, index: int) -> str:
        return f"{ctx.job.id}-upload-{index}"

    async def dispatch_upload(self, ctx: JobContext, index: int, source_url: str,
                              file_name: str, metadata: dict[str, Any] = None) -> bool:
        """Hand a temporary provider URL to image-upload. Failure is logged, not fatal."""
        payload = ctx.payload
        try:
            await ctx.dispatch(Queues.IMAGE_UPLOAD, {
                "user_id": payload["user_id"],
                "brand_id": payload["brand_id"],
                "asset_type": self.asset_type,
                "source_url": source_url,
                "file_name": file_name,
                "mime_type": "image/png",
                "metadata": metadata or {},
            }, job_id=self.upload_job_id(ctx, index))
            return True
        except Exception as e:
            ctx.log.warning("upload_dispatch_failed", index=index, error=str(e))
            return False

    async def record(self, ctx: JobContext, result: Any) -> None:
        await self.store.save_job_record(JobRecord(
            job_id=ctx.job.id,
            queue_name=ctx.job.queue_name,
            brand_id=ctx.job.brand_id,
            status="complete",
            result=result,
        ))


# ──────────────────────────────────────────────────────────────
#  Brand wizard
# ──────────────────────────────────────────────────────────────

class BrandWizardHandler(_GenerationHandler):
    queue_name = Queues.BRAND_WIZARD

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = ctx.payload
        step = payload["step"]
        ctx.log.info("wizard_step_started", step=step)

        await ctx.progress(0, "Starting brand wizard agent...", status="started")
        await ctx.progress(20, f"Analyzing {step} input...", status="processing")

        output = await self.provider.run_agent_step(step, payload.get("session_id"), payload["input"])

        await ctx.progress(80, f"Finalizing {step}...", status="processing")

        session = await self.store.get_session(payload["brand_id"])
        if session is not None:
            session.last_activity = utcnow()
            await self.store.upsert_session(session)

        result = {"step": step, "session_id": output.get("session_id"), "output": output}
        await self.record(ctx, result)
        ctx.completion_message = f"{step} complete"
        return result


# ──────────────────────────────────────────────────────────────
#  Logos
# ──────────────────────────────────────────────────────────────

class LogoGenerationHandler(_GenerationHandler):
    queue_name = Queues.LOGO_GENERATION
    asset_type = "logo"

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        count = p.get("count", 4)
        brand_id = p["brand_id"]
        ctx.log.info("logo_generation_started", count=count, logo_style=p["logo_style"])

        await ctx.progress(5, "Composing logo prompts...", status="composing")
        prompts = compose_logo_prompts(
            p["brand_name"], p["logo_style"], p["color_palette"], p["brand_vision"], count,
            archetype=p.get("archetype"), refinement_notes=p.get("refinement_notes"),
        )
        await ctx.progress(10, "Prompts ready. Starting generation...", status="composing")

        step = 70 / count
        references = [p["previous_logo_url"]] if p.get("previous_logo_url") else None

        async def generate(index: int, prompt: str) -> str:
            await ctx.progress(round(10 + index * step), f"Generating logo {index + 1} of {count}...",
                               status="generating")
            url = await self.provider.generate_image(prompt, kind="logo", reference_urls=references)
            await ctx.progress(round(10 + (index + 1) * step), f"Logo {index + 1} generated!",
                               status="generating")
            return url

        outcomes = await asyncio.gather(
            *(generate(i, prompt) for i, prompt in enumerate(prompts)),
            return_exceptions=True,
        )
        generated = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, Exception):
                ctx.log.warning("logo_variation_failed", index=index, error=str(outcome))
            else:
                generated.append((index, outcome))
        if not generated:
            raise HandlerError(f"All {count} logo generations failed")

        # rows first, so each upload job finds the asset it updates
        await ctx.progress(80, "Saving logo records...", status="saving")
        saved = await self.store.save_job_assets(ctx.job.id, brand_id, self.asset_type, [
            {
                "url": url,
                "metadata": {
                    "prompt": prompts[index],
                    "logo_style": p["logo_style"],
                    "index": index,
                    "is_refinement": p.get("is_refinement", False),
                    "upload_job_id": self.upload_job_id(ctx, index),
                },
            }
            for index, url in generated
        ])

        await ctx.progress(90, "Uploading logos to storage...", status="uploading")
        for index, url in generated:
            await self.dispatch_upload(
                ctx, index, url, f"logo-{brand_id}-{index}.png",
                metadata={"logo_style": p["logo_style"], "index": index},
            )

        result = {"logos": saved, "generated": len(saved), "requested": count}
        await self.record(ctx, result)
        ctx.completion_message = f"{len(saved)} logos generated!"
        ctx.log.info("logo_generation_complete", generated=len(saved))
        return result


# ──────────────────────────────────────────────────────────────
#  Mockups and bundles
# ──────────────────────────────────────────────────────────────

class MockupGenerationHandler(_GenerationHandler):
    queue_name = Queues.MOCKUP_GENERATION
    asset_type = "mockup"

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        product = p["product_name"]

        await ctx.progress(10, f"Designing {product} mockup...", status="composing")
        prompt = (
            f"Product mockup of a {p['product_category']} ({product}) branded for "
            f"{p.get('brand_name') or 'the brand'}. Use the provided logo. "
            f"Colors: {', '.join(p['color_palette'])}."
        )
        if p.get("mockup_instructions"):
            prompt += f" {p['mockup_instructions']}"
        references = [p["logo_url"]] + ([p["mockup_template_url"]] if p.get("mockup_template_url") else [])

        await ctx.progress(30, f"Generating {product} mockup...", status="generating")
        url = await self.provider.generate_image(prompt, kind="mockup", reference_urls=references)

        await ctx.progress(70, "Saving mockup...", status="saving")
        saved = await self.store.save_job_assets(ctx.job.id, p["brand_id"], self.asset_type, [{
            "url": url,
            "metadata": {
                "product_id": p["product_id"],
                "product_name": product,
                "prompt": prompt,
                "upload_job_id": self.upload_job_id(ctx, 0),
            },
        }])

        await ctx.progress(90, f"Uploading {product} mockup...", status="uploading")
        await self.dispatch_upload(
            ctx, 0, url, f"mockup-{p['product_id']}.png", metadata={"product_id": p["product_id"]},
        )

        result = {"mockup": saved[0]}
        await self.record(ctx, result)
        ctx.completion_message = f"{product} mockup generated!"
        return result


class BundleCompositionHandler(_GenerationHandler):
    queue_name = Queues.BUNDLE_COMPOSITION
    asset_type = "bundle"

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        name = p["bundle_name"]

        await ctx.progress(10, f"Composing {name} bundle layout...", status="composing")
        prompt = (
            f'{p["composition_style"]} product bundle photo "{name}" for {p["brand_name"]}, '
            f"featuring {len(p['product_mockup_urls'])} products. "
            f"Colors: {', '.join(p['color_palette'])}."
        )

        await ctx.progress(30, f"Generating {name} bundle image...", status="generating")
        url = await self.provider.generate_image(prompt, kind="bundle", reference_urls=p["product_mockup_urls"])

        await ctx.progress(70, "Saving bundle composition...", status="saving")
        saved = await self.store.save_job_assets(ctx.job.id, p["brand_id"], self.asset_type, [{
            "url": url,
            "metadata": {
                "bundle_name": name,
                "composition_style": p["composition_style"],
                "upload_job_id": self.upload_job_id(ctx, 0),
            },
        }])

        await ctx.progress(90, "Uploading bundle image...", status="uploading")
        await self.dispatch_upload(ctx, 0, url, f"bundle-{ctx.job.id}.png")

        result = {"bundle": saved[0]}
        await self.record(ctx, result)
        ctx.completion_message = f"{name} bundle composed!"
        return result


# ──────────────────────────────────────────────────────────────
#  Video
# ──────────────────────────────────────────────────────────────

class VideoGenerationHandler(_GenerationHandler):
    queue_name = Queues.VIDEO_GENERATION
    asset_type = "video"

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        product = p["product_name"]

        await ctx.progress(10, f"Storyboarding {product} video...", status="composing")
        prompt = (
            f"{p['video_style']} product video for {p['brand_name']}: {product}. "
            f"Colors: {', '.join(p['color_palette'])}."
        )

        await ctx.progress(30, f"Rendering {product} video...", status="generating")
        url = await self.provider.generate_video(
            prompt, duration_seconds=p["duration_seconds"],
            reference_urls=[p["product_mockup_url"], p["logo_url"]],
        )

        await ctx.progress(90, "Saving video...", status="saving")
        saved = await self.store.save_job_assets(ctx.job.id, p["brand_id"], self.asset_type, [{
            "url": url,
            "metadata": {"product_name": product, "duration_seconds": p["duration_seconds"]},
        }])

        result = {"video": saved[0]}
        await self.record(ctx, result)
        ctx.completion_message = f"{product} video ready!"
        return result
