"""QueryStudio billing core: provider webhooks, entitlements, realtime access."""
