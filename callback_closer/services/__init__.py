"""
Services package initialization.
Import and expose service instances.
"""

from callback_closer.services.twilio_service import twilio_service, get_twilio_service
