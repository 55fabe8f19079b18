"""Realtime channel authorization and subscription endpoints."""
