from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from opentelemetry import trace

from kindsync.core.webhook_auth import AuthType, WebhookAuthenticator, WebhookRequest, WebhookValidationError
from kindsync.schemas.imports import ImportOptions
from kindsync.schemas.items import Item
from kindsync.schemas.webhooks import RawWebhook, TokenRotateResponse, WebhookAction, WebhookLogEntry, WebhookResult
from kindsync.services.content import ContentRepositoryError
from kindsync.services.normalizer import (
    IgnoredEvent,
    ItemError,
    WebhookContext,
    normalize_jellyfin,
    normalize_listenbrainz_webhook,
    normalize_plex,
    normalize_trakt_webhook,
)
from kindsync.services.pending import PendingQueue, webhook_origin
from kindsync.services.store import ImportStore
from kindsync.services.upsert import UpsertEngine, UpsertOutcome

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WebhookNormalizer = Callable[[dict[str, Any], WebhookContext], list[Item]]
GenericHook = Callable[[dict[str, Any]], Awaitable[WebhookResult | None]]


class WebhookService(str, Enum):
    PLEX = "plex"
    JELLYFIN = "jellyfin"
    TRAKT = "trakt"
    LISTENBRAINZ = "listenbrainz"
    GENERIC = "generic"

    @classmethod
    def parse(cls, raw: str) -> WebhookService | None:
        try:
            return cls(raw)
        except ValueError:
            return None


class PayloadFormat(str, Enum):
    JSON = "application/json"
    MULTIPART = "multipart/form-data"


@dataclass(frozen=True, slots=True)
class EndpointSpec:
    service: WebhookService
    name: str
    auth_type: AuthType
    payload_format: PayloadFormat
    normalizer: WebhookNormalizer | None = None


DEFAULT_ENDPOINTS: Mapping[WebhookService, EndpointSpec] = {
    WebhookService.PLEX: EndpointSpec(
        WebhookService.PLEX, "Plex", AuthType.TOKEN, PayloadFormat.MULTIPART, normalize_plex
    ),
    WebhookService.JELLYFIN: EndpointSpec(
        WebhookService.JELLYFIN, "Jellyfin", AuthType.TOKEN, PayloadFormat.JSON, normalize_jellyfin
    ),
    WebhookService.TRAKT: EndpointSpec(
        WebhookService.TRAKT, "Trakt", AuthType.NONE, PayloadFormat.JSON, normalize_trakt_webhook
    ),
    WebhookService.LISTENBRAINZ: EndpointSpec(
        WebhookService.LISTENBRAINZ,
        "ListenBrainz",
        AuthType.TOKEN,
        PayloadFormat.JSON,
        normalize_listenbrainz_webhook,
    ),
    WebhookService.GENERIC: EndpointSpec(WebhookService.GENERIC, "Generic", AuthType.TOKEN, PayloadFormat.JSON),
}


def _decode_object(raw: str | bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookValidationError(400, "Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise WebhookValidationError(400, "Payload must be a JSON object")
    return payload


def _parse_json(request: WebhookRequest) -> dict[str, Any] | None:
    if request.form is None and request.body.strip():
        return _decode_object(request.body)
    return None


def _parse_multipart(request: WebhookRequest) -> dict[str, Any] | None:
    raw = (request.form or {}).get("payload")
    return _decode_object(raw) if raw else None


PAYLOAD_PARSERS: Mapping[PayloadFormat, Callable[[WebhookRequest], dict[str, Any] | None]] = {
    PayloadFormat.JSON: _parse_json,
    PayloadFormat.MULTIPART: _parse_multipart,
}


def parse_payload(request: WebhookRequest, payload_format: PayloadFormat = PayloadFormat.JSON) -> dict[str, Any]:
    """Parses the body per the declared format, else falls back to the raw form or query params."""
    parsed = PAYLOAD_PARSERS[payload_format](request)
    if parsed is not None:
        return parsed
    params = request.form if request.form is not None else request.query
    return {key: value for key, value in params.items() if key != "token"}


class WebhookGateway:
    """Authenticates, parses, normalizes and routes inbound webhooks."""

    def __init__(
        self,
        *,
        store: ImportStore,
        authenticator: WebhookAuthenticator,
        engine: UpsertEngine,
        pending: PendingQueue,
        endpoints: Mapping[WebhookService, EndpointSpec] = DEFAULT_ENDPOINTS,
        auto_post: bool = False,
        post_status: str = "publish",
        plex_url: str | None = None,
        plex_token: str | None = None,
        generic_hook: GenericHook | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.authenticator = authenticator
        self.engine = engine
        self.pending = pending
        self.endpoints = dict(endpoints)
        self.auto_post = auto_post
        self.post_status = post_status
        self.plex_url = plex_url
        self.plex_token = plex_token
        self.generic_hook = generic_hook
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def endpoint(self, service: str) -> EndpointSpec:
        service_id = WebhookService.parse(service)
        target = self.endpoints.get(service_id) if service_id is not None else None
        if target is None:
            raise WebhookValidationError(404, f"Unknown webhook service: {service}")
        return target

    async def handle(self, service: str, request: WebhookRequest) -> WebhookResult:
        with tracer.start_as_current_span("webhook.handle") as span:
            span.set_attribute("webhook.service", service)
            try:
                target = self.endpoint(service)
                await self.authenticator.authenticate(target.auth_type, request, target.service.value)
                payload = parse_payload(request, target.payload_format)
                result = await self._dispatch(target, payload)
            except WebhookValidationError as exc:
                logger.warning("webhook rejected service=%s status=%d reason=%s", service, exc.status_code, exc.message)
                await self._log(service, exc.status_code, None, exc.message)
                raise
            except ContentRepositoryError as exc:
                logger.error("webhook content write failed service=%s error=%s", service, exc)
                await self._log(service, 500, None, str(exc))
                raise
            except Exception as exc:
                logger.exception("webhook handler failed service=%s", service)
                await self._log(service, 500, "error", str(exc))
                raise

            span.set_attribute("webhook.action", result.action.value)
            await self._log(service, 200, result.action.value, result.message)
            return result

    async def _dispatch(self, target: EndpointSpec, payload: dict[str, Any]) -> WebhookResult:
        if target.normalizer is None:
            return await self._handle_generic(target, payload)

        context = WebhookContext(received_at=self._clock(), plex_url=self.plex_url, plex_token=self.plex_token)
        try:
            items = target.normalizer(payload, context)
        except IgnoredEvent as exc:
            return WebhookResult(action=WebhookAction.IGNORED, message=str(exc))
        except ItemError as exc:
            raise WebhookValidationError(400, str(exc)) from exc

        results = [await self._route(item) for item in items]
        if len(results) == 1:
            return results[0]
        return WebhookResult(action=WebhookAction.PROCESSED, count=len(results), results=results)

    async def _route(self, item: Item) -> WebhookResult:
        if not self.auto_post:
            entry = await self.pending.enqueue(item)
            return WebhookResult(action=WebhookAction.QUEUED, message="Queued for review", pending_id=entry.id)

        options = ImportOptions(post_status=self.post_status, skip_existing=True, update_existing=False)
        result = await self.engine.upsert(item, options, origin=webhook_origin(item))
        if result.outcome == UpsertOutcome.IMPORTED:
            return WebhookResult(action=WebhookAction.CREATED, record_id=result.record_id)
        return WebhookResult(action=WebhookAction.SKIPPED, message="Already exists", record_id=result.record_id)

    async def _handle_generic(self, target: EndpointSpec, payload: dict[str, Any]) -> WebhookResult:
        if self.generic_hook is not None:
            handled = await self.generic_hook(payload)
            if handled is not None:
                return handled

        await self.store.store_raw_webhook(
            RawWebhook(service=target.service.value, payload=payload, received_at=self._clock())
        )
        return WebhookResult(action=WebhookAction.STORED, message="Payload stored for processing")

    async def _log(self, service: str, status_code: int, action: str | None, message: str | None) -> None:
        await self.store.append_webhook_log(
            WebhookLogEntry(
                service=service,
                status_code=status_code,
                action=action,
                message=message,
                received_at=self._clock(),
            )
        )

    async def rotate_token(self, service: str) -> TokenRotateResponse:
        target = self.endpoint(service)
        if target.auth_type != AuthType.TOKEN:
            raise WebhookValidationError(400, f"{target.name} does not use token authentication")
        token = await self.authenticator.rotate_token(target.service.value)
        logger.info("webhook token rotated service=%s", target.service.value)
        return TokenRotateResponse(service=target.service.value, token=token)

    async def recent_log(self, limit: int = 50) -> list[WebhookLogEntry]:
        return await self.store.list_webhook_log(limit)
