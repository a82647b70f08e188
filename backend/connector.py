"""
Provider connectors — the external services job handlers call.

  GenerationProvider   image / video generation and wizard agent steps
  CrmConnector         creator lifecycle events for the CRM
  EmailConnector       transactional email delivery
  StorageConnector     permanent hosting for generated assets

Each has a REST implementation (httpx + tenacity, transient errors retried
within the call) and a logging implementation for development and tests.
Errors surface as ConnectorError, whose `retryable` flag drives the job's
retry policy.
"""
from __future__ import annotations

import abc
import hashlib
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import IntegrationConfig, get_settings
from job_queue.errors import HandlerError

logger = structlog.get_logger()


class ConnectorError(HandlerError):
    """A provider call failed. Transient failures are retryable."""

    def __init__(self, message: str, service: str = "", retryable: bool = True):
        self.service = service
        super().__init__(message, retryable=retryable)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


# ──────────────────────────────────────────────────────────────
#  Interfaces
# ──────────────────────────────────────────────────────────────

class GenerationProvider(abc.ABC):

    @abc.abstractmethod
    async def generate_image(self, prompt: str, *, width: int = 1024, height: int = 1024,
                             kind: str = "logo", reference_urls: list[str] = None) -> str:
        """Generate one image and return its (temporary) URL."""
        ...

    @abc.abstractmethod
    async def generate_video(self, prompt: str, *, duration_seconds: int = 10,
                             reference_urls: list[str] = None) -> str:
        ...

    @abc.abstractmethod
    async def run_agent_step(self, step: str, session_id: Optional[str],
                             input: dict[str, Any]) -> dict[str, Any]:
        """Run one brand wizard agent step. Returns the step result."""
        ...

    async def close(self) -> None:
        pass


class CrmConnector(abc.ABC):

    @abc.abstractmethod
    async def send_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        pass


class EmailConnector(abc.ABC):

    @abc.abstractmethod
    async def send(self, to: str, subject: str, html: str) -> dict[str, Any]:
        """Send one email. Returns the provider's message record (at least `id`)."""
        ...

    async def close(self) -> None:
        pass


class StorageConnector(abc.ABC):

    @abc.abstractmethod
    async def upload(self, source_url: str, path: str, mime_type: str) -> dict[str, Any]:
        """Copy `source_url` to permanent storage. Returns {public_url, storage_path, size}."""
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  REST implementations
# ──────────────────────────────────────────────────────────────

class _HTTPService:
    """Shared httpx client handling for the REST connectors."""

    service = "http"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0,
                 transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._send(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("connector_request_failed", service=self.service, url=url, error=str(e))
            raise ConnectorError(
                f"{self.service} request failed: {e}", self.service, retryable=_is_transient(e),
            ) from e
        if not response.content:
            return {}
        return response.json()

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


class RESTGenerationProvider(_HTTPService, GenerationProvider):
    service = "generation"

    async def generate_image(self, prompt: str, *, width: int = 1024, height: int = 1024,
                             kind: str = "logo", reference_urls: list[str] = None) -> str:
        result = await self._request("POST", "/images", json={
            "prompt": prompt, "width": width, "height": height,
            "kind": kind, "reference_urls": reference_urls or [],
        })
        url = result.get("url") or result.get("image_url")
        if not url:
            raise ConnectorError("generation response had no image url", self.service, retryable=True)
        return url

    async def generate_video(self, prompt: str, *, duration_seconds: int = 10,
                             reference_urls: list[str] = None) -> str:
        result = await self._request("POST", "/videos", json={
            "prompt": prompt, "duration_seconds": duration_seconds,
            "reference_urls": reference_urls or [],
        })
        url = result.get("url") or result.get("video_url")
        if not url:
            raise ConnectorError("generation response had no video url", self.service, retryable=True)
        return url

    async def run_agent_step(self, step: str, session_id: Optional[str],
                             input: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/agent/steps", json={
            "step": step, "session_id": session_id, "input": input,
        })


class RESTCrmConnector(_HTTPService, CrmConnector):
    service = "crm"

    async def send_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/events", json={
            "user_id": user_id, "event_type": event_type, "data": data,
        })


class RESTEmailConnector(_HTTPService, EmailConnector):
    service = "email"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0,
                 sender: str = "", transport: httpx.AsyncBaseTransport = None):
        super().__init__(base_url, api_key, timeout, transport)
        self.sender = sender

    async def send(self, to: str, subject: str, html: str) -> dict[str, Any]:
        return await self._request("POST", "/emails", json={
            "from": self.sender, "to": to, "subject": subject, "html": html,
        })


class RESTStorageConnector(_HTTPService, StorageConnector):
    service = "storage"

    async def upload(self, source_url: str, path: str, mime_type: str) -> dict[str, Any]:
        # separate client: the storage credentials never go to the source host
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport,
                                         follow_redirects=True) as downloader:
                download = await downloader.get(source_url)
                download.raise_for_status()
        except httpx.HTTPError as e:
            raise ConnectorError(
                f"download of {source_url[:80]} failed: {e}", self.service, retryable=_is_transient(e),
            ) from e

        result = await self._request(
            "PUT", f"/objects/{path}",
            content=download.content,
            headers={"Content-Type": mime_type, "x-upsert": "true"},
        )
        return {
            "public_url": result.get("public_url") or f"{self.base_url.rstrip('/')}/public/{path}",
            "storage_path": path,
            "size": len(download.content),
        }


# ──────────────────────────────────────────────────────────────
#  Logging implementations (development, tests)
# ──────────────────────────────────────────────────────────────

def _fingerprint(*parts: Any) -> str:
    return hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()[:16]


class LoggingGenerationProvider(GenerationProvider):
    """Returns deterministic placeholder URLs and records every call."""

    def __init__(self, base_url: str = "https://generated.brandflow.dev"):
        self.base_url = base_url
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def generate_image(self, prompt: str, *, width: int = 1024, height: int = 1024,
                             kind: str = "logo", reference_urls: list[str] = None) -> str:
        self.calls.append(("image", {"prompt": prompt, "kind": kind, "width": width, "height": height}))
        logger.info("generation_image_logged", kind=kind, prompt=prompt[:80])
        return f"{self.base_url}/{kind}/{_fingerprint(prompt, width, height)}.png"

    async def generate_video(self, prompt: str, *, duration_seconds: int = 10,
                             reference_urls: list[str] = None) -> str:
        self.calls.append(("video", {"prompt": prompt, "duration_seconds": duration_seconds}))
        logger.info("generation_video_logged", prompt=prompt[:80])
        return f"{self.base_url}/video/{_fingerprint(prompt, duration_seconds)}.mp4"

    async def run_agent_step(self, step: str, session_id: Optional[str],
                             input: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("agent_step", {"step": step, "session_id": session_id}))
        logger.info("generation_agent_step_logged", step=step)
        return {"step": step, "session_id": session_id or uuid.uuid4().hex, "output": {"echo": input}}


class LoggingCrmConnector(CrmConnector):
    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def send_event(self, user_id: str, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        self.events.append({"user_id": user_id, "event_type": event_type, "data": data})
        logger.info("crm_event_logged", user_id=user_id, event_type=event_type)
        return {"accepted": True, "event_type": event_type}


class LoggingEmailConnector(EmailConnector):
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send(self, to: str, subject: str, html: str) -> dict[str, Any]:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        self.sent.append({"id": message_id, "to": to, "subject": subject, "html": html})
        logger.info("email_logged", to=to, subject=subject)
        return {"id": message_id}


class LoggingStorageConnector(StorageConnector):
    def __init__(self, public_base: str = "https://storage.brandflow.dev/brand-assets"):
        self.public_base = public_base
        self.objects: dict[str, str] = {}          # storage path → source url

    async def upload(self, source_url: str, path: str, mime_type: str) -> dict[str, Any]:
        self.objects[path] = source_url
        logger.info("storage_upload_logged", path=path, mime_type=mime_type)
        return {"public_url": f"{self.public_base}/{path}", "storage_path": path, "size": 0}


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

@dataclass
class Connectors:
    generation: GenerationProvider
    crm: CrmConnector
    email: EmailConnector
    storage: StorageConnector

    async def close(self) -> None:
        for connector in (self.generation, self.crm, self.email, self.storage):
            await connector.close()


def create_connectors(config: IntegrationConfig = None) -> Connectors:
    config = config or get_settings().integrations

    if config.mode == "rest":
        timeout = config.request_timeout
        connectors = Connectors(
            generation=RESTGenerationProvider(config.generation_url, config.generation_api_key, timeout),
            crm=RESTCrmConnector(config.crm_url, config.crm_api_key, timeout),
            email=RESTEmailConnector(config.email_url, config.email_api_key, timeout, sender=config.email_from),
            storage=RESTStorageConnector(config.storage_url, config.storage_api_key, timeout),
        )
    else:
        connectors = Connectors(
            generation=LoggingGenerationProvider(),
            crm=LoggingCrmConnector(),
            email=LoggingEmailConnector(),
            storage=LoggingStorageConnector(),
        )

    logger.info("connectors_created", mode=config.mode)
    return connectors
