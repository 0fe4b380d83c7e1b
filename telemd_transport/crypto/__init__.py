"""Envelope encryption and request signing."""
