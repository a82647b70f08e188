"""
Job handlers — one per queue.

build_handlers() wires every handler to its collaborators and returns the
{queue name: handler} map the WorkerManager consumes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from backend.connector import Connectors
from database.store_base import BaseBrandStore
from job_queue.message_queue import MessageQueue
from job_queue.registry import Queues, QueueRegistry
from job_queue.worker import Handler

if TYPE_CHECKING:
    from abandonment.detector import AbandonmentDetector


@dataclass
class HandlerDeps:
    store: BaseBrandStore
    connectors: Connectors
    broker: MessageQueue
    registry: QueueRegistry
    detector: Optional[AbandonmentDetector] = None
    app_url: str = "http://localhost:3000"


def build_handlers(deps: HandlerDeps) -> dict[str, Handler]:
    from workers.generation import (
        BrandWizardHandler, BundleCompositionHandler, LogoGenerationHandler,
        MockupGenerationHandler, VideoGenerationHandler,
    )
    from workers.maintenance import CleanupHandler
    from workers.notifications import CrmSyncHandler, EmailSendHandler
    from workers.uploads import ImageUploadHandler

    return {
        Queues.BRAND_WIZARD: BrandWizardHandler(deps),
        Queues.LOGO_GENERATION: LogoGenerationHandler(deps),
        Queues.MOCKUP_GENERATION: MockupGenerationHandler(deps),
        Queues.BUNDLE_COMPOSITION: BundleCompositionHandler(deps),
        Queues.VIDEO_GENERATION: VideoGenerationHandler(deps),
        Queues.CRM_SYNC: CrmSyncHandler(deps),
        Queues.EMAIL_SEND: EmailSendHandler(deps),
        Queues.IMAGE_UPLOAD: ImageUploadHandler(deps),
        Queues.CLEANUP: CleanupHandler(deps),
    }


__all__ = ["HandlerDeps", "build_handlers"]
