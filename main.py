#!/usr/bin/env python3
"""
Main entry point for the CallbackCloser webhook service.
Handles command line arguments and starts the FastAPI server.
"""

import argparse
import logging
import sys
import uvicorn
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from callback_closer.config.settings import settings  # noqa: E402
from callback_closer.core.logging import setup_logging  # noqa: E402
from callback_closer.core.urls import build_webhook_urls, redact_webhook_token  # noqa: E402

# Set up logging
setup_logging()
logger = logging.getLogger(__name__)


def print_webhook_urls(show_token: bool = False) -> None:
    """Print the callback URLs to paste into the Twilio console."""
    urls = build_webhook_urls()
    show = (lambda url: url) if show_token else redact_webhook_token

    print(f"{settings.app_name} Twilio webhook URLs")
    print(f"- Base URL: {urls.app_base_url}")
    print(f"- Token mode: {'visible (--show-token)' if show_token else 'redacted (default)'}")
    print("")
    print(f"Voice (A CALL COMES IN, POST): {show(urls.voice_url)}")
    print(f"Messaging (A MESSAGE COMES IN, POST): {show(urls.sms_url)}")
    print(f"Status callback (number statusCallback + <Dial action>, POST): {show(urls.status_url)}")


def sync_webhooks(phone_number_sid: str) -> None:
    from callback_closer.services.twilio_service import twilio_service

    result = twilio_service.sync_incoming_number_webhooks(phone_number_sid)
    print(f"Synced webhooks for {result['phone_number']} ({result['sid']})")


def main():
    """Main application entry point."""

    # Parse command line arguments
    parser = argparse.ArgumentParser(
        description=f"{settings.app_name} webhook service"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind the server to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to bind the server to (default: {settings.port})"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development"
    )
    parser.add_argument(
        "--print-webhook-urls",
        action="store_true",
        help="Print the Twilio webhook URLs for this deployment and exit"
    )
    parser.add_argument(
        "--show-token",
        action="store_true",
        help="Include the webhook token in printed URLs"
    )
    parser.add_argument(
        "--sync-webhooks",
        type=str,
        metavar="PHONE_NUMBER_SID",
        help="Point a Twilio number's voice, SMS and status callbacks at this service and exit"
    )

    args = parser.parse_args()

    try:
        if args.print_webhook_urls:
            print_webhook_urls(show_token=args.show_token)
            return
        if args.sync_webhooks:
            sync_webhooks(args.sync_webhooks)
            return
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # Start the server
    logger.info(f"Starting {settings.app_name} server on {args.host}:{args.port}")
    uvicorn.run(
        "callback_closer.core.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
