"""
Job payload schemas — one strict model per queue.

JOB_SCHEMAS maps each queue name to its payload model. Unknown fields are
rejected so producer and handler versions cannot drift silently.
"""
from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl
from pydantic import ValidationError as PydanticValidationError

from job_queue.errors import FieldIssue, ValidationError
from job_queue.registry import Queues, QueueRegistry

Palette = list[str]

WIZARD_AGENT_STEPS = (
    "social-analysis",
    "brand-identity",
    "customization",
    "logo-generation",
    "logo-refinement",
    "product-selection",
    "mockup-review",
    "bundle-builder",
    "profit-calculator",
)

CRM_EVENT_TYPES = (
    "user.created",
    "wizard.started",
    "wizard.step-completed",
    "wizard.abandoned",
    "brand.completed",
    "subscription.created",
    "subscription.cancelled",
    "logo.generated",
    "mockup.generated",
)

EMAIL_TEMPLATES = (
    "welcome",
    "brand-complete",
    "wizard-abandoned",
    "password-reset",
    "subscription-confirmed",
    "subscription-cancelled",
    "generation-failed",
    "support-request",
    "payment-confirmed",
    "credit-low-warning",
)

CLEANUP_TYPES = ("expired-jobs", "stalled-jobs", "detect-abandonment")


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class BrandWizardPayload(JobPayload):
    """Runs one agent step of the brand wizard."""
    user_id: UUID
    brand_id: UUID
    step: Literal[WIZARD_AGENT_STEPS]
    session_id: Optional[str] = None
    input: dict[str, Any]
    credit_cost: int = Field(gt=0)


class LogoGenerationPayload(JobPayload):
    user_id: UUID
    brand_id: UUID
    brand_name: str = Field(min_length=1, max_length=200)
    logo_style: Literal["minimal", "bold", "vintage", "modern", "playful"]
    color_palette: Palette = Field(min_length=1, max_length=8)
    brand_vision: str = Field(max_length=2000)
    archetype: Optional[str] = Field(default=None, max_length=200)
    count: int = Field(default=4, ge=1, le=8)
    is_refinement: bool = False
    previous_logo_url: Optional[HttpUrl] = None
    refinement_notes: Optional[str] = Field(default=None, max_length=1000)


class MockupGenerationPayload(JobPayload):
    user_id: UUID
    brand_id: UUID
    product_id: UUID
    product_name: str
    product_category: str
    brand_name: Optional[str] = None
    logo_url: HttpUrl
    color_palette: Palette = Field(min_length=1, max_length=8)
    mockup_template_url: Optional[HttpUrl] = None
    mockup_instructions: Optional[str] = Field(default=None, max_length=2000)


class BundleCompositionPayload(JobPayload):
    user_id: UUID
    brand_id: UUID
    bundle_name: str = Field(min_length=1, max_length=200)
    product_mockup_urls: list[HttpUrl] = Field(min_length=2, max_length=10)
    brand_name: str
    color_palette: Palette = Field(min_length=1, max_length=8)
    composition_style: Literal["grid", "lifestyle", "flatlay", "showcase"] = "showcase"


class VideoGenerationPayload(JobPayload):
    user_id: UUID
    brand_id: UUID
    product_name: str
    product_mockup_url: HttpUrl
    logo_url: HttpUrl
    brand_name: str
    color_palette: Palette
    video_style: Literal["showcase", "unboxing", "lifestyle", "minimal"] = "showcase"
    duration_seconds: int = Field(default=10, ge=5, le=30)


class CrmSyncPayload(JobPayload):
    user_id: UUID
    event_type: Literal[CRM_EVENT_TYPES]
    data: dict[str, Any]


class EmailSendPayload(JobPayload):
    to: EmailStr
    template: Literal[EMAIL_TEMPLATES]
    data: dict[str, Any]
    user_id: Optional[UUID] = None


class ImageUploadPayload(JobPayload):
    user_id: UUID
    brand_id: UUID
    asset_type: Literal["logo", "mockup", "bundle", "social_asset", "video_thumbnail"]
    source_url: HttpUrl
    file_name: str = Field(min_length=1)
    mime_type: str = "image/png"
    metadata: Optional[dict[str, Any]] = None


class CleanupPayload(JobPayload):
    type: Literal[CLEANUP_TYPES]


JOB_SCHEMAS: dict[str, type[JobPayload]] = {
    Queues.BRAND_WIZARD: BrandWizardPayload,
    Queues.LOGO_GENERATION: LogoGenerationPayload,
    Queues.MOCKUP_GENERATION: MockupGenerationPayload,
    Queues.BUNDLE_COMPOSITION: BundleCompositionPayload,
    Queues.VIDEO_GENERATION: VideoGenerationPayload,
    Queues.CRM_SYNC: CrmSyncPayload,
    Queues.EMAIL_SEND: EmailSendPayload,
    Queues.IMAGE_UPLOAD: ImageUploadPayload,
    Queues.CLEANUP: CleanupPayload,
}


def _issues_from(exc: PydanticValidationError) -> list[FieldIssue]:
    issues = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        issues.append(FieldIssue(loc=loc, message=err.get("msg", ""), type=err.get("type", "")))
    return issues


class SchemaValidator:
    """Validates and normalizes job payloads against their queue's schema."""

    def __init__(self, schemas: dict[str, type[JobPayload]] = None):
        self._schemas = dict(schemas if schemas is not None else JOB_SCHEMAS)

    @classmethod
    def for_registry(cls, registry: QueueRegistry,
                     schemas: dict[str, type[JobPayload]] = None) -> "SchemaValidator":
        """Build a validator and check that every registered queue has a schema."""
        validator = cls(schemas)
        missing = [name for name in registry.list_names() if name not in validator._schemas]
        if missing:
            raise ValueError(f"No payload schema for queues: {', '.join(missing)}")
        return validator

    def schema_for(self, queue_name: str) -> type[JobPayload]:
        schema = self._schemas.get(queue_name)
        if schema is None:
            raise ValueError(f"No payload schema registered for queue {queue_name!r}")
        return schema

    def parse(self, queue_name: str, payload: Any) -> JobPayload:
        schema = self.schema_for(queue_name)
        if not isinstance(payload, dict):
            raise ValidationError(queue_name, [
                FieldIssue(loc="__root__", message="Payload must be an object", type="dict_type"),
            ])
        try:
            return schema.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(queue_name, _issues_from(e)) from e

    def validate(self, queue_name: str, payload: Any) -> dict[str, Any]:
        """Return the normalized, JSON-safe payload or raise ValidationError."""
        return self.parse(queue_name, payload).model_dump(mode="json", exclude_none=True)
