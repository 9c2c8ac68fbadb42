"""Webhook event-delivery subsystem for a multi-tenant EHR backend."""

__version__ = "1.0.0"
