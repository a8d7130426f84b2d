"""Authenticating reverse proxy in front of a Planka instance."""

__version__ = "1.0.0"
