"""Operator HTTP endpoints."""

from .admin import get_outbox_services, router

__all__ = ["router", "get_outbox_services"]
