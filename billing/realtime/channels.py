"""Channel authorization for realtime subscriptions.

Channels encode the account they belong to:

    backend-user-{account_id}   account-scoped; owner only
    backend-pro-{account_id}    entitlement-scoped; owner only, while active

Entitlement is re-read from the store on every decision; grants are never
cached, so a revoked subscriber loses access at the next check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from billing.entitlements.store import EntitlementStore
from billing.events import ACCOUNT_CHANNEL_PREFIX, ENTITLED_CHANNEL_PREFIX
from billing.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)


class ChannelScope(str, Enum):
    ACCOUNT = "account"
    ENTITLED = "entitled"


# Longest prefix first so parsing is unambiguous
_PREFIXES: tuple[tuple[str, ChannelScope], ...] = tuple(
    sorted(
        ((ACCOUNT_CHANNEL_PREFIX, ChannelScope.ACCOUNT), (ENTITLED_CHANNEL_PREFIX, ChannelScope.ENTITLED)),
        key=lambda pair: len(pair[0]),
        reverse=True,
    )
)


def parse_channel(channel_id: str) -> tuple[ChannelScope, str] | None:
    """Split a channel id into (scope, account_id); None if not a known channel."""
    for prefix, scope in _PREFIXES:
        if channel_id.startswith(prefix):
            account_id = channel_id[len(prefix):]
            return (scope, account_id) if account_id else None
    return None


@dataclass(frozen=True)
class ChannelGrant:
    identity: str | None
    channel_id: str
    allowed: bool
    reason: str = "ok"


class ChannelAuthorizer:
    """Decides whether an identity may attach to a channel."""

    def __init__(self, store: EntitlementStore) -> None:
        self._store = store

    def authorize(self, identity: str | None, channel_id: str) -> bool:
        return self.grant(identity, channel_id).allowed

    def grant(self, identity: str | None, channel_id: str) -> ChannelGrant:
        if not identity:
            return ChannelGrant(identity, channel_id, False, "unauthenticated")

        parsed = parse_channel(channel_id)
        if parsed is None:
            return ChannelGrant(identity, channel_id, False, "unknown_channel")

        scope, account_id = parsed
        if account_id != identity:
            logger.info("Channel access denied: identity mismatch on %s", channel_id)
            return ChannelGrant(identity, channel_id, False, "identity_mismatch")

        if scope is ChannelScope.ENTITLED:
            try:
                state = self._store.read(account_id)
            except PersistenceFailure:
                logger.warning("Entitlement unavailable for %s, denying %s", account_id, channel_id, exc_info=True)
                return ChannelGrant(identity, channel_id, False, "entitlement_unavailable")
            if not state.active:
                return ChannelGrant(identity, channel_id, False, "not_entitled")

        return ChannelGrant(identity, channel_id, True)
