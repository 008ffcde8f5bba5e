import asyncio
import json
from datetime import datetime
from urllib.parse import parse_qs

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from app.core.calendar import get_calendar_adapter, is_supported_provider
from app.core.calendar.base import EventPayload
from app.core.calendar.errors import (
    CredentialError,
    ProviderError,
    RemoteEventNotFoundError,
    TransientProviderError,
)
from app.core.calendar.google import GoogleCalendarAdapter
from app.core.calendar.noop import NoOpCalendarAdapter
from app.core.calendar.outlook import GRAPH_URL, OutlookCalendarAdapter

PAYLOAD = EventPayload(
    title="Closing",
    description=None,
    start_time=datetime(2026, 11, 2, 9, 0),
    end_time=datetime(2026, 11, 2, 12, 0),
    location="12 Elm St",
)


def _form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode(), keep_blank_values=True).items()}


# --------------------------------------------------------------------------- #
#                                 registry                                    #
# --------------------------------------------------------------------------- #
def test_registry_returns_fresh_adapters_by_name():
    first = get_calendar_adapter("Google")
    second = get_calendar_adapter("google")

    assert isinstance(first, GoogleCalendarAdapter)
    assert first is not second
    assert isinstance(get_calendar_adapter("outlook", timeout=3), OutlookCalendarAdapter)
    assert is_supported_provider("noop")


def test_registry_rejects_unknown_provider():
    assert not is_supported_provider("yahoo")
    with pytest.raises(ValueError):
        get_calendar_adapter("yahoo")


@pytest.mark.asyncio
async def test_slow_provider_call_becomes_transient_error():
    adapter = NoOpCalendarAdapter(timeout=0.01)

    with pytest.raises(TransientProviderError) as exc_info:
        await adapter._bounded("list_events", asyncio.sleep(1))
    assert exc_info.value.kind == "transient"


# --------------------------------------------------------------------------- #
#                                  outlook                                    #
# --------------------------------------------------------------------------- #
@pytest.mark.asyncio
async def test_outlook_exchange_code_and_identity():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/oauth2/v2.0/token"):
            form = _form(request)
            assert form["grant_type"] == "authorization_code"
            assert form["code"] == "auth-code"
            assert "offline_access" in form["scope"]
            return httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3599})
        assert request.headers["Authorization"] == "Bearer at-1"
        return httpx.Response(200, json={"mail": None, "userPrincipalName": "agent@contoso.com"})

    adapter = OutlookCalendarAdapter(transport=httpx.MockTransport(handler))
    grant = await adapter.exchange_code("auth-code", "https://app.example/callback")
    identity = await adapter.get_account_identity(grant["access_token"])

    assert grant == {"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3599}
    assert identity == "agent@contoso.com"
    assert seen[0].url.host == "login.microsoftonline.com"


@pytest.mark.asyncio
async def test_outlook_rejected_refresh_is_credential_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "AADSTS70008"})

    adapter = OutlookCalendarAdapter(transport=httpx.MockTransport(handler))

    with pytest.raises(CredentialError):
        await adapter.refresh_token("rt-old")


@pytest.mark.asyncio
async def test_outlook_list_events_follows_pages_and_skips_cancelled():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Prefer"] == 'outlook.timezone="UTC"'
        if request.url.params.get("$skiptoken") == "page2":
            return httpx.Response(200, json={"value": [{
                "id": "evt-2", "subject": "", "bodyPreview": "",
                "start": {"dateTime": "2026-11-03T15:30:00.0000000", "timeZone": "UTC"},
                "end": {"dateTime": "2026-11-03T16:00:00.0000000", "timeZone": "UTC"},
                "location": {"displayName": ""},
            }]})
        assert request.url.params["startDateTime"] == "2026-11-01T00:00:00"
        return httpx.Response(200, json={
            "value": [
                {
                    "id": "evt-1", "subject": "Inspection", "bodyPreview": "Bring keys",
                    "start": {"dateTime": "2026-11-02T09:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2026-11-02T10:00:00.0000000", "timeZone": "UTC"},
                    "location": {"displayName": "12 Elm St"},
                },
                {
                    "id": "evt-x", "subject": "Cancelled", "isCancelled": True,
                    "start": {"dateTime": "2026-11-02T11:00:00.0000000", "timeZone": "UTC"},
                    "end": {"dateTime": "2026-11-02T12:00:00.0000000", "timeZone": "UTC"},
                },
            ],
            "@odata.nextLink": f"{GRAPH_URL}/me/calendar/calendarView?$skiptoken=page2",
        })

    adapter = OutlookCalendarAdapter(transport=httpx.MockTransport(handler))
    events = await adapter.list_events("at-1", datetime(2026, 11, 1), datetime(2026, 12, 1))

    assert [e["external_id"] for e in events] == ["evt-1", "evt-2"]
    assert events[0]["start_time"] == datetime(2026, 11, 2, 9, 0)
    assert events[0]["location"] == "12 Elm St"
    assert events[1]["title"] == "Untitled Event"
    assert events[1]["description"] is None
    assert events[1]["location"] is None


@pytest.mark.asyncio
async def test_outlook_event_writes_map_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["subject"] == "Closing"
            assert body["start"] == {"dateTime": "2026-11-02T09:00:00", "timeZone": "UTC"}
            return httpx.Response(503, json={"error": {"code": "ServiceUnavailable", "message": "busy"}})
        if request.method == "PATCH":
            return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "gone"}})
        assert request.method == "DELETE"
        return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound", "message": "gone"}})

    adapter = OutlookCalendarAdapter(transport=httpx.MockTransport(handler))

    with pytest.raises(TransientProviderError):
        await adapter.create_event("at-1", PAYLOAD)
    with pytest.raises(RemoteEventNotFoundError):
        await adapter.update_event("at-1", "evt-1", PAYLOAD)
    # удаление уже удалённого события - успех
    await adapter.delete_event("at-1", "evt-1")


@pytest.mark.asyncio
async def test_outlook_transport_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    adapter = OutlookCalendarAdapter(transport=httpx.MockTransport(handler))

    with pytest.raises(TransientProviderError):
        await adapter.create_event("at-1", PAYLOAD)


# --------------------------------------------------------------------------- #
#                                   google                                    #
# --------------------------------------------------------------------------- #
class FakeRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeEvents:
    def __init__(self, pages=None, errors=None):
        self.pages = pages or {None: {"items": []}}
        self.errors = errors or {}
        self.calls = []

    def _request(self, method, kwargs, result):
        self.calls.append((method, kwargs))
        return FakeRequest(result, self.errors.get(method))

    def list(self, **kwargs):
        return self._request("list", kwargs, self.pages[kwargs.get("pageToken")])

    def insert(self, **kwargs):
        return self._request("insert", kwargs, {"id": "g-new"})

    def patch(self, **kwargs):
        return self._request("patch", kwargs, {"id": kwargs["eventId"]})

    def delete(self, **kwargs):
        return self._request("delete", kwargs, "")


class FakeService:
    def __init__(self, events):
        self._events = events

    def events(self):
        return self._events


def _http_error(status: int, reason: str | None = None) -> HttpError:
    error = {"code": status, "message": f"status {status}"}
    if reason:
        error["errors"] = [{"domain": "usageLimits", "reason": reason}]
    content = json.dumps({"error": error}).encode()
    return HttpError(httplib2.Response({"status": status}), content)


def _google(events: FakeEvents, **kwargs) -> GoogleCalendarAdapter:
    return GoogleCalendarAdapter(service_factory=lambda token: FakeService(events), **kwargs)


@pytest.mark.asyncio
async def test_google_refresh_token_via_token_endpoint():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://oauth2.googleapis.com/token"
        form = _form(request)
        assert form["refresh_token"] == "1//rt"
        assert form["grant_type"] == "refresh_token"
        assert "client_secret" in form
        return httpx.Response(200, json={"access_token": "ya29.new", "expires_in": 3599, "token_type": "Bearer"})

    grant = await GoogleCalendarAdapter(transport=httpx.MockTransport(handler)).refresh_token("1//rt")

    assert grant == {"access_token": "ya29.new", "refresh_token": None, "expires_in": 3599}


def test_google_authorization_url_requests_offline_access():
    url = GoogleCalendarAdapter().authorization_url("state-123", "https://app.example/cb")

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "access_type=offline" in url
    assert "state=state-123" in url


@pytest.mark.asyncio
async def test_google_list_events_pages_and_parses_times():
    events_api = FakeEvents(pages={
        None: {
            "items": [
                {"id": "g-1", "summary": "Walkthrough", "status": "confirmed",
                 "start": {"dateTime": "2026-11-02T10:00:00+01:00"},
                 "end": {"dateTime": "2026-11-02T11:00:00+01:00"}},
                {"id": "g-gone", "status": "cancelled"},
            ],
            "nextPageToken": "p2",
        },
        "p2": {"items": [{"id": "g-2", "start": {"date": "2026-11-05"}, "end": {"date": "2026-11-06"}}]},
    })

    events = await _google(events_api).list_events("ya29", datetime(2026, 11, 1), datetime(2026, 12, 1))

    assert [e["external_id"] for e in events] == ["g-1", "g-2"]
    assert events[0]["start_time"] == datetime(2026, 11, 2, 9, 0)
    assert events[1]["title"] == "Untitled Event"
    assert events[1]["start_time"] == datetime(2026, 11, 5)
    first_call = events_api.calls[0][1]
    assert first_call["calendarId"] == "primary"
    assert first_call["timeMin"] == "2026-11-01T00:00:00Z"
    assert first_call["singleEvents"] is True


@pytest.mark.asyncio
async def test_google_create_and_update_send_event_body():
    events_api = FakeEvents()
    adapter = _google(events_api)

    external_id = await adapter.create_event("ya29", PAYLOAD)
    await adapter.update_event("ya29", external_id, PAYLOAD)

    assert external_id == "g-new"
    (_, insert_kwargs), (_, patch_kwargs) = events_api.calls
    assert insert_kwargs["body"]["summary"] == "Closing"
    assert insert_kwargs["body"]["start"]["dateTime"] == "2026-11-02T09:00:00Z"
    assert insert_kwargs["body"]["location"] == "12 Elm St"
    assert patch_kwargs["eventId"] == "g-new"


@pytest.mark.asyncio
async def test_google_http_errors_map_onto_taxonomy():
    events_api = FakeEvents(errors={
        "delete": _http_error(404),
        "patch": _http_error(410),
        "insert": _http_error(400),
        "list": _http_error(401),
    })
    adapter = _google(events_api)

    await adapter.delete_event("ya29", "g-1")
    with pytest.raises(RemoteEventNotFoundError):
        await adapter.update_event("ya29", "g-1", PAYLOAD)
    with pytest.raises(ProviderError) as exc_info:
        await adapter.create_event("ya29", PAYLOAD)
    assert exc_info.value.kind == "provider"
    assert exc_info.value.status_code == 400
    with pytest.raises(CredentialError):
        await adapter.list_events("ya29", datetime(2026, 11, 1), datetime(2026, 12, 1))

    # 403 из-за квоты - временная ошибка, переподключать аккаунт не нужно
    for reason in ("rateLimitExceeded", "userRateLimitExceeded"):
        adapter = _google(FakeEvents(errors={"insert": _http_error(403, reason)}))
        with pytest.raises(TransientProviderError) as exc_info:
            await adapter.create_event("ya29", PAYLOAD)
        assert exc_info.value.status_code == 403
    bare = HttpError(httplib2.Response({"status": 403}), json.dumps({"errors": [{"reason": "rateLimitExceeded"}]}).encode())
    with pytest.raises(TransientProviderError):
        await _google(FakeEvents(errors={"insert": bare})).create_event("ya29", PAYLOAD)
    with pytest.raises(CredentialError):
        await _google(FakeEvents(errors={"insert": _http_error(403, "insufficientPermissions")})).create_event("ya29", PAYLOAD)


@pytest.mark.asyncio
async def test_google_rate_limit_is_transient():
    adapter = _google(FakeEvents(errors={"insert": _http_error(429)}))

    with pytest.raises(TransientProviderError):
        await adapter.create_event("ya29", PAYLOAD)
