"""Tests for the REST queue source and sender, using httpx.MockTransport."""
import json
from datetime import datetime, timezone

import httpx
import pytest

from backend.connector import (
    FetchError, LoggingSender, RESTQueueSource, RESTSender, StaticQueueSource,
    create_queue_source, create_sender, normalize_patient,
)
from config.settings import BackendConfig
from models.schemas import ChannelKind, MessageType


def _queue_config(**kwargs):
    return BackendConfig(
        type="rest", base_url="https://queue.example.com",
        auth_credentials={"token": "secret"},
        endpoints={"list_waiting": "/chats"}, **kwargs,
    )


def _sender_config(**kwargs):
    return BackendConfig(
        type="rest", base_url="https://send.example.com",
        auth_type="api_key", auth_credentials={"api_key": "k-1", "header_name": "access-token"},
        endpoints={"send": "/send-card"},
        templates=kwargs.pop("templates", {"thirty_minute": "card-30", "end_of_day": "card-eod"}),
        **kwargs,
    )


class TestNormalizePatient:
    def test_vendor_field_names(self):
        p = normalize_patient({
            "attendanceId": 42,
            "contact": {"name": "Ana", "number": "5511988887777"},
            "sectorId": "triage",
            "channelId": "wa-1",
            "channelType": "api_oficial",
            "waitStartTime": "2025-03-10T12:00:00Z",
        })
        assert p.id == "42"
        assert p.name == "Ana"
        assert p.phone == "5511988887777"
        assert p.sector_id == "triage"
        assert p.channel_type == ChannelKind.OFFICIAL_API
        assert p.wait_start == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    def test_unknown_channel_type_defaults_to_normal(self):
        p = normalize_patient({"id": "x", "channelType": "telegram", "wait_start": "2025-03-10T12:00:00"})
        assert p.channel_type == ChannelKind.NORMAL
        assert p.wait_start.tzinfo is not None


class TestRESTQueueSource:
    @pytest.mark.asyncio
    async def test_list_waiting_envelope_and_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["path"] = request.url.path
            return httpx.Response(200, json={"data": [
                {"id": "a", "name": "Ana", "waitStartTime": "2025-03-10T12:00:00Z"},
                {"id": "b", "name": "Bia", "waitStartTime": "2025-03-10T12:05:00Z"},
            ]})

        source = RESTQueueSource(_queue_config(), transport=httpx.MockTransport(handler))
        patients = await source.list_waiting()
        await source.close()

        assert [p.id for p in patients] == ["a", "b"]
        assert seen == {"auth": "Bearer secret", "path": "/chats"}

    @pytest.mark.asyncio
    async def test_invalid_rows_are_skipped(self):
        def handler(request):
            return httpx.Response(200, json=[
                {"id": "a", "waitStartTime": "2025-03-10T12:00:00Z"},
                {"id": "b"},                       # no wait start
                {"waitStartTime": "2025-03-10T12:00:00Z"},   # no id
            ])

        source = RESTQueueSource(_queue_config(), transport=httpx.MockTransport(handler))
        assert [p.id for p in await source.list_waiting()] == ["a"]

    @pytest.mark.asyncio
    async def test_http_error_raises_fetch_error(self):
        source = RESTQueueSource(
            _queue_config(), transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        with pytest.raises(FetchError):
            await source.list_waiting()

    @pytest.mark.asyncio
    async def test_bad_json_raises_fetch_error(self):
        source = RESTQueueSource(
            _queue_config(), transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")),
        )
        with pytest.raises(FetchError):
            await source.list_waiting()


class TestRESTSender:
    @pytest.mark.asyncio
    async def test_send_posts_template_payload(self, make_patient):
        captured = {}

        def handler(request):
            captured["headers"] = dict(request.headers)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "msg-9"})

        sender = RESTSender(_sender_config(), transport=httpx.MockTransport(handler))
        result = await sender.send(make_patient("P"), MessageType.END_OF_DAY)
        await sender.close()

        assert result.success
        assert result.message_id == "msg-9"
        assert captured["headers"]["access-token"] == "k-1"
        assert captured["body"]["template_id"] == "card-eod"
        assert captured["body"]["chat_id"] == "P"
        assert captured["body"]["message_type"] == "end_of_day"

    @pytest.mark.asyncio
    async def test_official_channel_uses_template_endpoint(self, make_patient):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"id": "msg-1"})

        config = _sender_config()
        config.endpoints["send_template"] = "/send-template"
        sender = RESTSender(config, transport=httpx.MockTransport(handler))
        await sender.send(
            make_patient("A", channel_type=ChannelKind.OFFICIAL_API, sector_name="Pediatria"),
            MessageType.THIRTY_MINUTE,
        )
        await sender.send(make_patient("N"), MessageType.THIRTY_MINUTE)
        payload = sender.build_payload(
            make_patient("A", channel_type=ChannelKind.OFFICIAL_API, sector_name="Pediatria"),
            MessageType.THIRTY_MINUTE,
        )
        await sender.close()

        assert paths == ["/send-template", "/send-card"]
        assert payload["channel_type"] == "api_oficial"
        assert payload["sector_name"] == "Pediatria"

    @pytest.mark.asyncio
    async def test_official_channel_falls_back_to_send_endpoint(self, make_patient):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        sender = RESTSender(_sender_config(), transport=httpx.MockTransport(handler))
        await sender.send(make_patient("A", channel_type=ChannelKind.OFFICIAL_API), MessageType.END_OF_DAY)
        assert paths == ["/send-card"]

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self, make_patient):
        sender = RESTSender(
            _sender_config(), transport=httpx.MockTransport(lambda r: httpx.Response(500, text="oops")),
        )
        result = await sender.send(make_patient(), MessageType.THIRTY_MINUTE)
        assert not result.success
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_vendor_rejection_is_failure(self, make_patient):
        sender = RESTSender(
            _sender_config(),
            transport=httpx.MockTransport(
                lambda r: httpx.Response(200, json={"success": False, "error": "chat closed"})
            ),
        )
        result = await sender.send(make_patient(), MessageType.THIRTY_MINUTE)
        assert not result.success
        assert result.reason == "chat closed"

    @pytest.mark.asyncio
    async def test_missing_template_is_failure_without_request(self, make_patient):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        sender = RESTSender(_sender_config(templates={}), transport=httpx.MockTransport(handler))
        result = await sender.send(make_patient(), MessageType.THIRTY_MINUTE)
        assert not result.success
        assert calls == []

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self, make_patient):
        def handler(request):
            raise httpx.ConnectError("refused")

        sender = RESTSender(_sender_config(), transport=httpx.MockTransport(handler))
        result = await sender.send(make_patient(), MessageType.THIRTY_MINUTE)
        assert not result.success
        assert result.reason.startswith("transport")


class TestFactories:
    def test_rest_when_configured(self):
        assert isinstance(create_queue_source(_queue_config()), RESTQueueSource)
        assert isinstance(create_sender(_sender_config()), RESTSender)

    def test_fallbacks(self):
        assert isinstance(create_queue_source(BackendConfig()), StaticQueueSource)
        assert isinstance(create_sender(BackendConfig(type="rest")), LoggingSender)

    @pytest.mark.asyncio
    async def test_logging_sender_records(self, make_patient):
        sender = LoggingSender()
        result = await sender.send(make_patient("P"), MessageType.END_OF_DAY)
        assert result.success
        assert sender.sent[0][:2] == ("P", MessageType.END_OF_DAY)
