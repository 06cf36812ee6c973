"""
Authentication of inbound Twilio webhooks.

Two modes, selected by ``TWILIO_VALIDATE_SIGNATURE``:

* shared token: a configured secret sent in one of a fixed list of headers
  (raw or ``Bearer``-prefixed) or in the ``webhook_token`` query parameter
* signature: ``X-Twilio-Signature`` verified against the full callback URL and
  form parameters with the account auth token

Outside production a missing secret or a bad signature degrades to the more
permissive check; in production both fail closed.
"""

import hmac
import logging
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlsplit

from fastapi import Request
from fastapi.responses import JSONResponse
from twilio.request_validator import RequestValidator

from callback_closer.config.settings import Settings, settings
from callback_closer.core.logging import log_twilio_event

TOKEN_HEADER_NAMES = (
    "x-callbackcloser-webhook-token",
    "x-twilio-webhook-auth-token",
    "x-webhook-token",
    "authorization",
)
TOKEN_QUERY_PARAM = "webhook_token"
SIGNATURE_HEADER = "x-twilio-signature"


def _secrets_match(candidate: Optional[str], expected: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def _strip_bearer(value: str) -> str:
    value = value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def has_valid_webhook_token(url: str, headers: Mapping[str, str], config: Optional[Settings] = None) -> bool:
    """
    Check the shared webhook token.

    Args:
        url: Full request URL (the query string may carry the token)
        headers: Request headers, any key case
        config: Settings to read the secret from

    Returns:
        bool: True if the token matches, or no token is configured outside production
    """
    config = config or settings
    expected = config.twilio_webhook_auth_token
    if not expected:
        return not config.is_production

    lowered = {key.lower(): value for key, value in headers.items()}
    for header_name in TOKEN_HEADER_NAMES:
        raw = lowered.get(header_name)
        if raw and _secrets_match(_strip_bearer(raw), expected):
            return True

    query_tokens = parse_qs(urlsplit(url).query).get(TOKEN_QUERY_PARAM, [])
    return any(_secrets_match(token.strip(), expected) for token in query_tokens)


def has_valid_twilio_signature(url: str, headers: Mapping[str, str], params: Mapping[str, Any], config: Optional[Settings] = None) -> bool:
    """Verify ``X-Twilio-Signature`` for the given URL and form parameters."""
    config = config or settings
    if not config.twilio_auth_token:
        return False

    lowered = {key.lower(): value for key, value in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER)
    if not signature:
        return False

    validator = RequestValidator(config.twilio_auth_token)
    return validator.validate(url, dict(params), signature)


def is_authorized_webhook(
    route: str,
    url: str,
    headers: Mapping[str, str],
    params: Mapping[str, Any],
    config: Optional[Settings] = None,
) -> bool:
    """
    Decide whether a webhook request came from Twilio.

    Every decision is logged as a ``twilio.webhook-auth`` event.

    Args:
        route: Route name for the audit log
        url: Full public callback URL
        headers: Request headers
        params: Parsed form parameters
        config: Settings override (tests)

    Returns:
        bool: True to accept, False to reject with 401
    """
    config = config or settings

    if not config.twilio_validate_signature:
        accepted = has_valid_webhook_token(url, headers, config)
        if accepted and not config.twilio_webhook_auth_token:
            decision = "accept_no_token_configured"
        else:
            decision = "accept_shared_token" if accepted else "reject_shared_token"
        log_twilio_event(
            "webhook-auth",
            "token_checked",
            logging.INFO if accepted else logging.WARNING,
            webhook_route=route,
            mode="shared_token",
            decision=decision,
        )
        return accepted

    if has_valid_twilio_signature(url, headers, params, config):
        log_twilio_event(
            "webhook-auth",
            "signature_checked",
            webhook_route=route,
            mode="signature",
            decision="accept_signature",
        )
        return True

    if config.is_production:
        log_twilio_event(
            "webhook-auth",
            "signature_checked",
            logging.WARNING,
            webhook_route=route,
            mode="signature",
            decision="reject_invalid_signature",
        )
        return False

    accepted = has_valid_webhook_token(url, headers, config)
    log_twilio_event(
        "webhook-auth",
        "signature_fallback",
        logging.WARNING,
        webhook_route=route,
        mode="signature",
        decision="accept_fallback_shared_token" if accepted else "reject_fallback_shared_token",
    )
    return accepted


def public_request_url(request: Request, config: Optional[Settings] = None) -> str:
    """
    URL Twilio used to reach us.

    Behind a TLS-terminating proxy ``request.url`` shows the internal scheme
    and host, so ``WEBHOOK_BASE_URL`` (when set) replaces them.
    """
    config = config or settings
    if not config.webhook_base_url:
        return str(request.url)

    url = f"{config.webhook_base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def has_valid_webhook_request(request: Request, params: Mapping[str, Any], route: str, config: Optional[Settings] = None) -> bool:
    """Authenticate a FastAPI request carrying Twilio form parameters."""
    return is_authorized_webhook(
        route,
        public_request_url(request, config),
        request.headers,
        params,
        config,
    )


def unauthorized_response() -> JSONResponse:
    """Response for rejected webhooks. Nothing is persisted before this."""
    return JSONResponse(content={"error": "Unauthorized"}, status_code=401)
