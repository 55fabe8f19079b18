"""Per-account entitlement state, its store and the event reconciler."""
