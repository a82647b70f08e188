"""
Notification handlers — CRM lifecycle events and transactional email.

Both are external side effects that must not repeat when a job is retried
after the call succeeded, so each provider call runs through
JobContext.run_once keyed by the job id.
"""
from __future__ import annotations

import html
from typing import Any

from job_queue.worker import JobContext
from workers import HandlerDeps

# CRM event → the contact change it represents
CRM_EVENT_ACTIONS: dict[str, dict[str, str]] = {
    "user.created": {"action": "create_contact"},
    "wizard.started": {"action": "add_tag", "tag": "wizard_started"},
    "wizard.step-completed": {"action": "update_field", "field": "wizard_step"},
    "wizard.abandoned": {"action": "add_tag", "tag": "wizard_abandoned"},
    "brand.completed": {"action": "add_tag", "tag": "brand_complete"},
    "subscription.created": {"action": "update_subscription"},
    "subscription.cancelled": {"action": "add_tag", "tag": "subscription_cancelled"},
    "logo.generated": {"action": "add_tag", "tag": "logo_generated"},
    "mockup.generated": {"action": "add_tag", "tag": "mockup_generated"},
}

TEMPLATE_SUBJECTS: dict[str, str] = {
    "welcome": "Welcome to BrandFlow!",
    "brand-complete": "Your brand is ready!",
    "wizard-abandoned": "Your brand is waiting for you",
    "password-reset": "Reset your password",
    "subscription-confirmed": "Subscription confirmed",
    "subscription-cancelled": "Subscription cancelled",
    "generation-failed": "Generation issue -- we are on it",
    "support-request": "Support request received",
    "payment-confirmed": "Payment confirmed",
    "credit-low-warning": "You are running low on credits",
}

_TEMPLATE_BODIES: dict[str, str] = {
    "welcome": '<h1>Welcome to BrandFlow!</h1><p>Hi {name}, your account is ready. '
               '<a href="{app_url}/wizard">Start building your brand</a>.</p>',
    "brand-complete": '<h1>Your brand is ready!</h1><p>Hi {name}, your brand "{brand_name}" is complete. '
                      '<a href="{app_url}/dashboard">View your brand</a>.</p>',
    "wizard-abandoned": '<h1>Your brand is waiting</h1><p>Hi {name}, you are {progress_percent}% of the way '
                        'there and left off at "{last_step}". '
                        '<a href="{resume_url}">Pick up where you left off</a>.</p>',
    "password-reset": '<h1>Reset your password</h1><p>Click <a href="{reset_url}">here</a> to reset '
                      'your password. This link expires in 1 hour.</p>',
    "subscription-confirmed": "<h1>Subscription confirmed</h1><p>Hi {name}, your {tier} plan is now active.</p>",
    "subscription-cancelled": "<h1>Subscription cancelled</h1><p>Hi {name}, your subscription has been "
                              "cancelled. You can resubscribe any time.</p>",
    "generation-failed": "<h1>Generation issue</h1><p>Hi {name}, we hit a problem generating your "
                         "{asset_type}. Your credits have been returned.</p>",
    "support-request": "<h1>Support request received</h1><p>Hi {name}, we received your request and "
                       "will respond within 24 hours.</p>",
    "payment-confirmed": "<h1>Payment confirmed</h1><p>Hi {name}, thanks! Your payment of {amount} "
                         "has been received.</p>",
    "credit-low-warning": '<h1>Running low on credits</h1><p>Hi {name}, you have {remaining} credits left. '
                          '<a href="{app_url}/billing">Top up</a>.</p>',
}


class _TemplateData(dict):
    """Escaped template values; missing keys render as empty strings."""

    def __missing__(self, key: str) -> str:
        return ""


def render_email(template: str, data: dict[str, Any], app_url: str) -> tuple[str, str]:
    """Return (subject, html) for a template."""
    subject = TEMPLATE_SUBJECTS.get(template, "BrandFlow notification")
    values = _TemplateData({k: html.escape(str(v)) for k, v in data.items()})
    values.setdefault("name", values.get("user_name") or values.get("brand_name") or "there")
    values["app_url"] = html.escape(app_url.rstrip("/"))
    body = _TEMPLATE_BODIES.get(template, "<p>{name}</p>").format_map(values)
    return subject, (
        '<!DOCTYPE html><html><body style="font-family:sans-serif;max-width:600px;margin:0 auto;'
        f'padding:20px;">{body}<hr><p style="color:#888;font-size:12px;">BrandFlow</p></body></html>'
    )


class CrmSyncHandler:

    def __init__(self, deps: HandlerDeps):
        self.crm = deps.connectors.crm

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        event_type = p["event_type"]
        action = CRM_EVENT_ACTIONS.get(event_type)
        if action is None:
            ctx.log.warning("crm_event_unmapped", event_type=event_type)
            return {"synced": False, "reason": f"Unknown event type: {event_type}"}

        ctx.log.info("crm_sync_started", event_type=event_type, action=action["action"])
        response = await ctx.run_once(
            "crm_event",
            lambda: self.crm.send_event(p["user_id"], event_type, {**p["data"], **action}),
        )
        if response is None:
            return {"synced": True, "event_type": event_type, "duplicate": True}

        ctx.log.info("crm_sync_complete", event_type=event_type)
        return {"synced": True, "event_type": event_type, "result": response}


class EmailSendHandler:

    def __init__(self, deps: HandlerDeps):
        self.email = deps.connectors.email
        self.app_url = deps.app_url

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        p = ctx.payload
        subject, body = render_email(p["template"], p["data"], self.app_url)
        ctx.log.info("email_send_started", to=p["to"], template=p["template"])

        response = await ctx.run_once("email_sent", lambda: self.email.send(p["to"], subject, body))
        if response is None:
            return {"sent": True, "template": p["template"], "duplicate": True}

        ctx.log.info("email_sent", to=p["to"], template=p["template"], email_id=response.get("id"))
        return {"sent": True, "template": p["template"], "email_id": response.get("id")}
