"""Caller identity extraction passed explicitly into message store calls."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from chat_relay.services.errors import AuthenticationError


@dataclass(frozen=True)
class CallerIdentity:
    """Identity headers of one request, read before the body is parsed."""
    header_user: str | None = None
    auth_token: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    auth_token: str | None = None
    request_id: str | None = None


def _bearer_token(value: str | None) -> str | None:
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def identify_caller(request: Request, require_auth: bool = False) -> CallerIdentity:
    """
    Read ``X-User-Id`` (set by an authenticating proxy), ``Authorization: Bearer``
    and ``X-Request-ID``.

    Raises:
        AuthenticationError: ``missing_identity`` when ``require_auth`` is set
            and neither identity header is present
    """
    identity = CallerIdentity(
        header_user=(request.headers.get("x-user-id") or "").strip() or None,
        auth_token=_bearer_token(request.headers.get("authorization")),
        request_id=request.headers.get("x-request-id"),
    )
    if require_auth and identity.header_user is None and identity.auth_token is None:
        raise AuthenticationError("missing_identity", "Caller identity could not be established")
    return identity


def bind_caller_context(identity: CallerIdentity, body_user_id: str, require_auth: bool = False) -> CallerContext:
    """
    Attach the body's ``userId`` to the caller identity.

    Raises:
        AuthenticationError: ``identity_mismatch`` when ``require_auth`` is set
            and the header user id differs from ``userId``
    """
    if require_auth and identity.header_user is not None and identity.header_user != body_user_id:
        raise AuthenticationError("identity_mismatch", "userId does not match the authenticated caller")
    return CallerContext(user_id=body_user_id, auth_token=identity.auth_token, request_id=identity.request_id)


def extract_caller_context(request: Request, body_user_id: str, require_auth: bool = False) -> CallerContext:
    """Build the CallerContext for one request in a single step."""
    return bind_caller_context(identify_caller(request, require_auth), body_user_id, require_auth)
