from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from kindsync.services.store import ImportStore

TOKEN_HEADER = "x-webhook-token"
SIGNATURE_HEADERS = ("x-hub-signature-256", "x-signature")
TOKEN_BYTES = 24


class AuthType(str, Enum):
    TOKEN = "token"
    HMAC = "hmac"
    BASIC = "basic"
    NONE = "none"


class WebhookValidationError(Exception):
    """Rejected webhook request; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(slots=True)
class WebhookRequest:
    """Transport-neutral view of an inbound webhook. Header names are lower case."""

    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    form: Mapping[str, str] | None = None

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        return value or None


def token_secret_key(service: str) -> str:
    return f"webhook_token:{service}"


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def _matches(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def extract_token(request: WebhookRequest) -> str | None:
    token = request.header(TOKEN_HEADER)
    if token:
        return token
    authorization = request.header("authorization")
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :].strip()
        if token:
            return token
    token = request.query.get("token")
    if token:
        return token
    if request.form is not None:
        return request.form.get("token") or None
    return None


class WebhookAuthenticator:
    """Per-service credential checks. Secrets come from configuration first, then the store."""

    def __init__(
        self,
        store: ImportStore,
        *,
        tokens: Mapping[str, str] | None = None,
        hmac_secrets: Mapping[str, str] | None = None,
        basic_credentials: Mapping[str, str] | None = None,
    ) -> None:
        self.store = store
        self.tokens = dict(tokens or {})
        self.hmac_secrets = dict(hmac_secrets or {})
        self.basic_credentials = dict(basic_credentials or {})
        self._strategies: Mapping[AuthType, Callable[[WebhookRequest, str], Awaitable[None]]] = {
            AuthType.TOKEN: self._check_token,
            AuthType.HMAC: self._check_hmac,
            AuthType.BASIC: self._check_basic,
            AuthType.NONE: self._check_none,
        }

    async def authenticate(self, auth_type: AuthType, request: WebhookRequest, service: str) -> None:
        await self._strategies[auth_type](request, service)

    async def expected_token(self, service: str) -> str:
        configured = self.tokens.get(service)
        if configured:
            return configured
        return await self.store.get_or_create_secret(token_secret_key(service), generate_token)

    async def rotate_token(self, service: str) -> str:
        if self.tokens.get(service):
            raise WebhookValidationError(409, "token is fixed by configuration")
        token = generate_token()
        await self.store.set_secret(token_secret_key(service), token)
        return token

    async def _check_token(self, request: WebhookRequest, service: str) -> None:
        expected = await self.expected_token(service)
        provided = extract_token(request)
        if not provided:
            raise WebhookValidationError(401, "Webhook token required")
        if not _matches(expected, provided):
            raise WebhookValidationError(403, "Invalid webhook token")

    async def _check_hmac(self, request: WebhookRequest, service: str) -> None:
        secret = self.hmac_secrets.get(service)
        if not secret:
            raise WebhookValidationError(503, "HMAC secret not configured")

        signature = None
        for name in SIGNATURE_HEADERS:
            signature = request.header(name)
            if signature:
                break
        if not signature:
            raise WebhookValidationError(401, "HMAC signature required")

        digest = hmac.new(secret.encode("utf-8"), request.body, hashlib.sha256).hexdigest()
        if not _matches(f"sha256={digest}", signature):
            raise WebhookValidationError(403, "Invalid HMAC signature")

    async def _check_basic(self, request: WebhookRequest, service: str) -> None:
        configured = self.basic_credentials.get(service)
        if not configured or ":" not in configured:
            raise WebhookValidationError(503, "Basic credentials not configured")

        authorization = request.header("authorization")
        if not authorization or not authorization.startswith("Basic "):
            raise WebhookValidationError(401, "Basic authentication required")

        try:
            decoded = base64.b64decode(authorization[len("Basic ") :], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise WebhookValidationError(401, "Malformed basic credentials") from exc

        username, _, password = decoded.partition(":")
        expected_user, _, expected_password = configured.partition(":")
        user_ok = _matches(expected_user, username)
        password_ok = _matches(expected_password, password)
        if not (user_ok and password_ok):
            raise WebhookValidationError(403, "Invalid credentials")

    async def _check_none(self, request: WebhookRequest, service: str) -> None:
        return None
