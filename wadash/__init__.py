"""WhatsApp conversation dashboard backed by the Twilio Messages API."""

__version__ = "1.0.0"
