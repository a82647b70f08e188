"""
Image upload handler — copies temporary provider URLs into permanent storage
and repoints the brand assets generated from them.
"""
from __future__ import annotations

from typing import Any

from job_queue.worker import JobContext
from workers import HandlerDeps


class ImageUploadHandler:

    def __init__(self, deps: HandlerDeps):
        self.store = deps.store
        self.storage = deps.connectors.storage

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        path = f"{p['user_id']}/{p['brand_id']}/{p['asset_type']}/{p['file_name']}"
        ctx.log.info("image_upload_started", storage_path=path, source_url=p["source_url"][:80])

        # storage writes are upserts, so a retried upload overwrites the same object
        stored = await self.storage.upload(p["source_url"], path, p.get("mime_type", "image/png"))
        await ctx.progress(80, "Upload complete", status="uploading")

        updated = await self.store.attach_upload(
            p["brand_id"], p["source_url"], stored["public_url"], stored["storage_path"],
        )
        if not updated:
            ctx.log.warning("image_upload_no_asset_row", storage_path=path)

        ctx.log.info("image_upload_complete", storage_path=path, public_url=stored["public_url"])
        return {
            "uploaded": True,
            "storage_path": stored["storage_path"],
            "public_url": stored["public_url"],
            "size": stored.get("size", 0),
            "assets_updated": updated,
        }
