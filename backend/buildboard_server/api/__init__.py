"""
API module for Buildboard server.

This module provides the external interface: a JSON REST API over the
social services, served with aiohttp.

Invariants:
    - The calling member is identified by the X-Actor header
    - Domain errors map to stable status codes and error codes

How to change safely:
    - Add new routes, don't change the meaning of existing ones
"""

from .http_server import Services, create_http_app, start_http_server

__all__ = [
    "Services",
    "create_http_app",
    "start_http_server",
]
