"""Webhook relay: signed outbound event delivery and inbound callback handling."""

__version__ = "0.1.0"
