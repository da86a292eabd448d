from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json

import pytest

from kindsync.core.webhook_auth import (
    AuthType,
    WebhookAuthenticator,
    WebhookRequest,
    WebhookValidationError,
    extract_token,
    token_secret_key,
)
from kindsync.schemas.webhooks import WebhookAction
from kindsync.services.store import InMemoryStore
from kindsync.services.webhooks import EndpointSpec, PayloadFormat, WebhookService, parse_payload

TRAKT_SCROBBLE = {"action": "scrobble", "movie": {"title": "Heat", "year": 1995}}
JELLYFIN_STOP = {
    "NotificationType": "PlaybackStop",
    "PlayedToCompletion": True,
    "ItemType": "Movie",
    "Name": "Arrival",
    "Year": 2016,
}


def _json_request(payload: dict, headers: dict[str, str] | None = None) -> WebhookRequest:
    lowered = {key.lower(): value for key, value in (headers or {}).items()}
    return WebhookRequest(headers=lowered, body=json.dumps(payload).encode())


def _token(container, service: str) -> str:
    return asyncio.run(container.webhooks.authenticator.expected_token(service))


def test_extract_token_checks_header_bearer_query_then_form() -> None:
    assert extract_token(WebhookRequest(headers={"x-webhook-token": "h", "authorization": "Bearer b"})) == "h"
    assert extract_token(WebhookRequest(headers={"authorization": "Bearer b"}, query={"token": "q"})) == "b"
    assert extract_token(WebhookRequest(query={"token": "q"}, form={"token": "f"})) == "q"
    assert extract_token(WebhookRequest(form={"token": "f"})) == "f"
    assert extract_token(WebhookRequest(headers={"authorization": "Basic abc"})) is None


@pytest.mark.parametrize(
    ("headers", "expected_status"),
    [
        ({}, 401),
        ({"X-Webhook-Token": "wrong"}, 403),
    ],
)
def test_bad_token_is_rejected_without_side_effects(container, headers, expected_status) -> None:
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(container.webhooks.handle("jellyfin", _json_request(JELLYFIN_STOP, headers)))

    assert exc_info.value.status_code == expected_status
    assert asyncio.run(container.store.list_pending()) == []
    assert container.content.records == {}


def test_token_of_another_service_is_rejected(container) -> None:
    plex_token = _token(container, "plex")
    _token(container, "jellyfin")

    with pytest.raises(WebhookValidationError) as exc_info:
        request = _json_request(JELLYFIN_STOP, {"X-Webhook-Token": plex_token})
        asyncio.run(container.webhooks.handle("jellyfin", request))

    assert exc_info.value.status_code == 403


def test_valid_token_queues_item_for_review(container) -> None:
    token = _token(container, "jellyfin")

    result = asyncio.run(
        container.webhooks.handle("jellyfin", _json_request(JELLYFIN_STOP, {"Authorization": f"Bearer {token}"}))
    )

    assert result.action == WebhookAction.QUEUED
    pending = asyncio.run(container.store.list_pending())
    assert [entry.id for entry in pending] == [result.pending_id]
    assert pending[0].item.title == "Arrival"
    assert container.content.records == {}


def test_auto_post_creates_then_skips(container) -> None:
    container.webhooks.auto_post = True

    first = asyncio.run(container.webhooks.handle("trakt", _json_request(TRAKT_SCROBBLE)))
    second = asyncio.run(container.webhooks.handle("trakt", _json_request(TRAKT_SCROBBLE)))

    assert first.action == WebhookAction.CREATED
    assert second.action == WebhookAction.SKIPPED
    assert len(container.content.records) == 1
    record = container.content.records[first.record_id]
    assert record.status == "publish"
    assert record.fields["imported_from"] == "webhook_trakt"


def test_ignored_event_creates_nothing(container) -> None:
    result = asyncio.run(container.webhooks.handle("trakt", _json_request({"action": "checkin"})))

    assert result.action == WebhookAction.IGNORED
    assert asyncio.run(container.store.list_pending()) == []


def test_malformed_item_is_a_bad_request(container) -> None:
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(container.webhooks.handle("trakt", _json_request({"action": "scrobble", "movie": {}})))
    assert exc_info.value.status_code == 400


def test_invalid_json_is_a_bad_request(container) -> None:
    request = WebhookRequest(body=b"{not json")
    with pytest.raises(WebhookValidationError, match="Invalid JSON"):
        asyncio.run(container.webhooks.handle("trakt", request))


def test_unknown_service_is_not_found(container) -> None:
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(container.webhooks.handle("myspace", _json_request({})))
    assert exc_info.value.status_code == 404


def test_multiple_listens_are_processed_together(container) -> None:
    token = _token(container, "listenbrainz")
    payload = {
        "listen_type": "single",
        "payload": [
            {"listened_at": 1714564800, "track_metadata": {"track_name": "One", "artist_name": "A"}},
            {"listened_at": 1714564900, "track_metadata": {"track_name": "Two", "artist_name": "A"}},
        ],
    }

    request = _json_request(payload, {"X-Webhook-Token": token})
    result = asyncio.run(container.webhooks.handle("listenbrainz", request))

    assert result.action == WebhookAction.PROCESSED
    assert result.count == 2
    assert [entry.action for entry in result.results] == [WebhookAction.QUEUED, WebhookAction.QUEUED]


def test_plex_multipart_payload_field(container) -> None:
    token = _token(container, "plex")
    payload = {"event": "media.scrobble", "Metadata": {"type": "track", "title": "Song", "grandparentTitle": "Band"}}
    request = WebhookRequest(query={"token": token}, form={"payload": json.dumps(payload)})

    result = asyncio.run(container.webhooks.handle("plex", request))

    assert result.action == WebhookAction.QUEUED
    pending = asyncio.run(container.store.list_pending())
    assert pending[0].item.artist == "Band"


def test_generic_payload_is_stored_raw(container) -> None:
    token = _token(container, "generic")
    request = WebhookRequest(query={"token": token, "title": "Hello"})

    result = asyncio.run(container.webhooks.handle("generic", request))

    assert result.action == WebhookAction.STORED
    raw = asyncio.run(container.store.list_raw_webhooks(10))
    assert raw[0].payload == {"title": "Hello"}


def test_every_attempt_is_logged_newest_first(container) -> None:
    with pytest.raises(WebhookValidationError):
        asyncio.run(container.webhooks.handle("jellyfin", _json_request(JELLYFIN_STOP)))
    asyncio.run(container.webhooks.handle("trakt", _json_request(TRAKT_SCROBBLE)))

    log = asyncio.run(container.webhooks.recent_log())

    assert [(entry.service, entry.status_code) for entry in log] == [("trakt", 200), ("jellyfin", 401)]
    assert log[0].action == "queued"


def test_rotate_token_replaces_stored_secret(container) -> None:
    old = _token(container, "plex")

    rotated = asyncio.run(container.webhooks.rotate_token("plex"))

    assert rotated.token != old
    assert container.store.secrets[token_secret_key("plex")] == rotated.token
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(container.webhooks.rotate_token("trakt"))
    assert exc_info.value.status_code == 400


def test_configured_token_cannot_be_rotated() -> None:
    authenticator = WebhookAuthenticator(InMemoryStore(), tokens={"plex": "fixed"})

    assert asyncio.run(authenticator.expected_token("plex")) == "fixed"
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(authenticator.rotate_token("plex"))
    assert exc_info.value.status_code == 409


def test_hmac_signature_is_verified() -> None:
    authenticator = WebhookAuthenticator(InMemoryStore(), hmac_secrets={"trakt": "s3cret"})
    body = b'{"action": "scrobble"}'
    signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    signed = WebhookRequest(headers={"x-hub-signature-256": signature}, body=body)
    asyncio.run(authenticator.authenticate(AuthType.HMAC, signed, "trakt"))

    for headers, expected_status in (({}, 401), ({"x-signature": "sha256=00"}, 403)):
        with pytest.raises(WebhookValidationError) as exc_info:
            asyncio.run(authenticator.authenticate(AuthType.HMAC, WebhookRequest(headers=headers, body=body), "trakt"))
        assert exc_info.value.status_code == expected_status

    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(authenticator.authenticate(AuthType.HMAC, WebhookRequest(body=body), "plex"))
    assert exc_info.value.status_code == 503


def test_basic_credentials_are_verified() -> None:
    authenticator = WebhookAuthenticator(InMemoryStore(), basic_credentials={"jellyfin": "user:pass"})

    def _basic(value: str) -> WebhookRequest:
        encoded = base64.b64encode(value.encode()).decode()
        return WebhookRequest(headers={"authorization": f"Basic {encoded}"})

    asyncio.run(authenticator.authenticate(AuthType.BASIC, _basic("user:pass"), "jellyfin"))
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(authenticator.authenticate(AuthType.BASIC, _basic("user:nope"), "jellyfin"))
    assert exc_info.value.status_code == 403
    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(authenticator.authenticate(AuthType.BASIC, WebhookRequest(), "jellyfin"))
    assert exc_info.value.status_code == 401


def test_parse_payload_follows_declared_format() -> None:
    multipart = WebhookRequest(form={"payload": '{"a": 1}', "b": "2"})
    assert parse_payload(multipart, PayloadFormat.MULTIPART) == {"a": 1}
    assert parse_payload(multipart, PayloadFormat.JSON) == {"payload": '{"a": 1}', "b": "2"}
    assert parse_payload(WebhookRequest(body=b'{"c": 3}', query={"d": "4"}), PayloadFormat.MULTIPART) == {"d": "4"}
    assert parse_payload(WebhookRequest(form={"b": "2", "token": "t"})) == {"b": "2"}
    assert parse_payload(WebhookRequest(body=b'{"c": 3}', query={"d": "4"})) == {"c": 3}
    assert parse_payload(WebhookRequest(query={"d": "4", "token": "t"})) == {"d": "4"}
    with pytest.raises(WebhookValidationError, match="JSON object"):
        parse_payload(WebhookRequest(body=b"[1, 2]"))


def test_custom_endpoint_table_can_change_auth(container) -> None:
    container.webhooks.endpoints[WebhookService.JELLYFIN] = EndpointSpec(
        WebhookService.JELLYFIN,
        "Jellyfin",
        AuthType.NONE,
        PayloadFormat.JSON,
        container.webhooks.endpoints[WebhookService.JELLYFIN].normalizer,
    )

    result = asyncio.run(container.webhooks.handle("jellyfin", _json_request(JELLYFIN_STOP)))

    assert result.action == WebhookAction.QUEUED


def test_handler_failure_is_logged_and_reraised(container) -> None:
    async def broken_hook(payload):
        raise RuntimeError("hook exploded")

    container.webhooks.generic_hook = broken_hook
    token = _token(container, "generic")

    with pytest.raises(RuntimeError, match="hook exploded"):
        asyncio.run(container.webhooks.handle("generic", WebhookRequest(query={"token": token, "a": "1"})))

    log = asyncio.run(container.webhooks.recent_log())
    assert [(entry.service, entry.status_code, entry.action) for entry in log] == [("generic", 500, "error")]
    assert log[0].message == "hook exploded"
    assert asyncio.run(container.store.list_raw_webhooks(10)) == []


def test_millisecond_watched_at_is_a_logged_bad_request(container) -> None:
    payload = {"action": "scrobble", "watched_at": 1714500000000, "movie": {"title": "Heat", "year": 1995}}

    with pytest.raises(WebhookValidationError) as exc_info:
        asyncio.run(container.webhooks.handle("trakt", _json_request(payload)))

    assert exc_info.value.status_code == 400
    log = asyncio.run(container.webhooks.recent_log())
    assert [(entry.service, entry.status_code) for entry in log] == [("trakt", 400)]
    assert asyncio.run(container.store.list_pending()) == []
