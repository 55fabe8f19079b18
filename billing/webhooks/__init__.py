"""Webhook inbound system.

Receives Polar lifecycle events. Each delivery is admission-checked,
signature-verified, deduplicated and reconciled into entitlement state.
"""
