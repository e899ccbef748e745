"""Shared HTTP client used to reach playground ports."""

from berth.services.http.client import HTTPClientManager

__all__ = ["HTTPClientManager"]
