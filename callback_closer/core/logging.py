"""
Logging configuration for the application.
Sets up console logging and the structured event helper used by webhook routes.
"""

import logging
import sys
from typing import Any, Optional

from callback_closer.config.settings import settings

twilio_logger = logging.getLogger("callback_closer.twilio")


def setup_logging():
    """Set up application logging configuration."""

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # Clear any existing handlers
    root_logger.handlers.clear()

    simple_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(simple_formatter)

    # Set encoding for Windows to handle Unicode characters
    if sys.platform == "win32" and hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')

    root_logger.addHandler(console_handler)

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info("Logging configuration initialized")


def _format_fields(fields: dict) -> str:
    return " ".join(f"{key}={fields[key]}" for key in sorted(fields) if fields[key] is not None)


def log_twilio_event(
    route: str,
    event: str,
    level: int = logging.INFO,
    error: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """
    Emit one structured audit event for a provider webhook.

    The message reads ``twilio.<route> <event> key=value ...`` and the same
    fields are attached to the record as ``twilio_event`` for handlers that
    want them structured.

    Args:
        route: Webhook route name (voice, sms, status, messaging, webhook-auth)
        event: Short event name, e.g. ``lead_created_for_missed_call``
        level: Logging level
        error: Exception to report alongside the event, if any
        **fields: Identifiers and the ``decision`` tag
    """
    payload = {"route": route, "event": event, **fields}
    if error is not None:
        payload["error"] = str(error) or error.__class__.__name__
    message = f"twilio.{route} {event}"
    details = _format_fields({k: v for k, v in payload.items() if k not in ("route", "event")})
    if details:
        message = f"{message} {details}"
    twilio_logger.log(level, message, extra={"twilio_event": payload})
