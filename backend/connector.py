"""
Backend Connectors — the notifier's two external collaborators.

  QueueSource  pulls the current waiting-queue snapshot (once per tick)
  Sender       delivers one notification to one patient

Both are configured via settings.yaml. The REST implementations talk JSON
over httpx; the mock/static ones are for development and tests. The dispatch
core only sees `list_waiting()` and `send()`: wire format, auth headers and
payload shape stay in this module.
"""
from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BackendConfig
from models.schemas import ChannelKind, MessageType, SendResult, WaitingPatient

logger = structlog.get_logger()


class FetchError(Exception):
    """The queue source could not produce a snapshot. The tick is aborted."""


# ──────────────────────────────────────────────────────────────
#  Interfaces
# ──────────────────────────────────────────────────────────────

class QueueSource(abc.ABC):

    @abc.abstractmethod
    async def list_waiting(self) -> list[WaitingPatient]:
        """Current waiting patients. Raise on failure; never return a stale list."""
        ...

    async def close(self) -> None:
        pass


class Sender(abc.ABC):

    @abc.abstractmethod
    async def send(self, patient: WaitingPatient, message_type: MessageType) -> SendResult:
        """Deliver one message. Exactly one attempt; retries happen on a later tick."""
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  Shared HTTP plumbing
# ──────────────────────────────────────────────────────────────

class _RESTClientMixin:
    config: BackendConfig
    client: Optional[httpx.AsyncClient]
    _transport: Optional[httpx.AsyncBaseTransport]

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  Queue sources
# ──────────────────────────────────────────────────────────────

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "attendanceId", "attendance_id", "chatId", "chat_id", "_id"),
    "name": ("name", "contactName", "contact_name", "patientName"),
    "phone": ("phone", "number", "contactNumber", "phone_number", "mobile"),
    "sector_id": ("sector_id", "sectorId", "sector"),
    "sector_name": ("sector_name", "sectorName"),
    "channel_id": ("channel_id", "channelId", "channel"),
    "channel_type": ("channel_type", "channelType"),
    "wait_start": ("wait_start", "waitStartTime", "waitingSince", "startedAt", "createdAt"),
}


def _pick(raw: dict[str, Any], key: str) -> Any:
    for alias in _FIELD_ALIASES[key]:
        value = raw.get(alias)
        if value not in (None, ""):
            return value
    return None


def normalize_patient(raw: dict[str, Any]) -> WaitingPatient:
    """
    Map a vendor queue entry onto WaitingPatient.
    Override in a subclass if your queue API uses other field names.
    """
    contact = raw.get("contact") if isinstance(raw.get("contact"), dict) else {}
    merged = {**contact, **raw}
    data = {key: _pick(merged, key) for key in _FIELD_ALIASES}
    data = {k: (v if k == "wait_start" else str(v)) for k, v in data.items() if v is not None}
    if data.get("channel_type") not in ("normal", "api_oficial"):
        data.pop("channel_type", None)
    return WaitingPatient.model_validate(data)


class RESTQueueSource(_RESTClientMixin, QueueSource):
    """
    Polls a REST endpoint that returns the waiting queue as a JSON list or
    as {"data": [...]} / {"results": [...]}.
    """

    def __init__(self, config: BackendConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = None
        self._transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def list_waiting(self) -> list[WaitingPatient]:
        try:
            result = await self._request("GET", "list_waiting")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("queue_fetch_failed", error=str(e))
            raise FetchError(str(e)) from e

        rows = result if isinstance(result, list) else result.get("data", result.get("results", []))
        patients = []
        for raw in rows:
            try:
                patients.append(normalize_patient(raw))
            except ValidationError as e:
                # One malformed row must not hide the rest of the queue.
                logger.warning("queue_entry_invalid", raw_id=raw.get("id"), error=str(e))
        logger.debug("queue_fetched", count=len(patients), raw_count=len(rows))
        return patients


class StaticQueueSource(QueueSource):
    """
    Serves whatever snapshot was last set. For development and tests.

        source = StaticQueueSource([patient_a, patient_b])
        source.set_waiting([patient_b])      # patient_a left the queue
        source.fail_with(RuntimeError("down"))
    """

    def __init__(self, patients: Optional[list[WaitingPatient]] = None):
        self._patients = list(patients or [])
        self._error: Optional[Exception] = None
        self.calls = 0

    def set_waiting(self, patients: list[WaitingPatient]) -> None:
        self._patients = list(patients)

    def fail_with(self, error: Optional[Exception]) -> None:
        self._error = error

    async def list_waiting(self) -> list[WaitingPatient]:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return list(self._patients)


# ──────────────────────────────────────────────────────────────
#  Senders
# ──────────────────────────────────────────────────────────────

class RESTSender(_RESTClientMixin, Sender):
    """
    POSTs one notification per call. The template (action card) for each message
    type is chosen explicitly from `templates` in config; a type with no
    template configured is reported as a failed send.
    """

    def __init__(self, config: BackendConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = None
        self._transport = transport

    def template_for(self, message_type: MessageType) -> str:
        return self.config.templates.get(message_type.value, "")

    def endpoint_for(self, patient: WaitingPatient) -> str:
        """Official-API channels take a template message, normal ones an action card."""
        send = self.config.endpoints.get("send", "send")
        if patient.channel_type == ChannelKind.OFFICIAL_API:
            return self.config.endpoints.get("send_template", send)
        return send

    def build_payload(self, patient: WaitingPatient, message_type: MessageType) -> dict[str, Any]:
        """Override for vendor-specific payloads."""
        return {
            "chat_id": patient.id,
            "number": patient.phone,
            "channel_id": patient.channel_id,
            "channel_type": patient.channel_type.value,
            "sector_name": patient.sector_name,
            "template_id": self.template_for(message_type),
            "message_type": message_type.value,
        }

    async def send(self, patient: WaitingPatient, message_type: MessageType) -> SendResult:
        if not self.template_for(message_type):
            logger.warning("sender_template_missing", message_type=message_type.value)
            return SendResult.failed(f"no template configured for {message_type.value}")

        client = await self._get_client()
        url = self.endpoint_for(patient)
        try:
            response = await client.post(url, json=self.build_payload(patient, message_type))
        except httpx.HTTPError as e:
            logger.error("send_transport_error", patient_id=patient.id,
                         message_type=message_type.value, error=str(e))
            return SendResult.failed(f"transport: {e}")

        if not response.is_success:
            return SendResult.failed(
                f"http {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("success") is False:
            reason = body.get("error") or body.get("message") or "rejected by vendor"
            return SendResult.failed(str(reason), status_code=response.status_code)

        message_id = ""
        if isinstance(body, dict):
            message_id = str(body.get("id") or body.get("message_id") or "")
        return SendResult.ok(message_id=message_id, status_code=response.status_code)


class LoggingSender(Sender):
    """Dry-run sender: logs and reports success. Keeps a list of what it 'sent'."""

    def __init__(self):
        self.sent: list[tuple[str, MessageType, datetime]] = []

    async def send(self, patient: WaitingPatient, message_type: MessageType) -> SendResult:
        self.sent.append((patient.id, message_type, datetime.now(timezone.utc)))
        logger.info("dry_run_send", patient_id=patient.id, message_type=message_type.value)
        return SendResult.ok(message_id=f"dry-{len(self.sent)}")


def create_queue_source(config: BackendConfig) -> QueueSource:
    """Factory function to create the configured queue source."""
    if config.type == "rest" and config.base_url:
        return RESTQueueSource(config)
    logger.warning("using_static_queue_source", reason="no queue source configured or base_url empty")
    return StaticQueueSource()


def create_sender(config: BackendConfig) -> Sender:
    """Factory function to create the configured sender."""
    if config.type == "rest" and config.base_url:
        return RESTSender(config)
    logger.warning("using_logging_sender", reason="no sender configured or base_url empty")
    return LoggingSender()
