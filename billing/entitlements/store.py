"""Entitlement store: account id -> EntitlementState with atomic read-modify-write.

Two implementations share the ``EntitlementStore`` protocol:

- ``InMemoryEntitlementStore``: keyed lock table, one ``threading.Lock`` per
  account.  Lock waits are bounded; a timed-out write raises
  ``PersistenceFailure`` rather than proceeding.
- ``RedisEntitlementStore``: optimistic WATCH/MULTI transaction per account
  with a bounded number of retries.  Socket timeouts bound every round trip.

Both guarantee that ``read_modify_write`` is linearizable per account and that
different accounts never contend with each other.  The mutation function may
be invoked more than once under optimistic retry and must be pure.

Provider customer ids are unique across accounts and never reassigned.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from redis.exceptions import RedisError, WatchError

from billing.entitlements.models import EntitlementState
from billing.exceptions import CustomerAlreadyLinked, PersistenceFailure

logger = logging.getLogger(__name__)

Mutation = Callable[[EntitlementState], EntitlementState]

_KEY_PREFIX = "billing"
_MAX_TRANSACTION_ATTEMPTS = 8


@runtime_checkable
class EntitlementStore(Protocol):
    """Record store consumed by the reconciler and the channel authorizer.

    Implementations raise ``PersistenceFailure`` when the backend is
    unavailable or an operation exceeds its time bound.
    """

    def read(self, account_id: str) -> EntitlementState: ...

    def read_modify_write(self, account_id: str, fn: Mutation) -> EntitlementState: ...

    def account_for_customer(self, customer_id: str) -> str | None: ...

    def link_customer(self, account_id: str, customer_id: str) -> None: ...


class InMemoryEntitlementStore:
    """Thread-safe in-process store.

    Suitable for tests and single-process deployments.
    """

    def __init__(self, lock_timeout: float = 2.0) -> None:
        self._lock_timeout = lock_timeout
        self._table_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._records: dict[str, EntitlementState] = {}
        self._customer_accounts: dict[str, str] = {}
        self._account_customers: dict[str, str] = {}

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def read(self, account_id: str) -> EntitlementState:
        return self._records.get(account_id) or EntitlementState()

    def read_modify_write(self, account_id: str, fn: Mutation) -> EntitlementState:
        lock = self._lock_for(account_id)
        if not lock.acquire(timeout=self._lock_timeout):
            raise PersistenceFailure(f"timed out waiting for entitlement lock on {account_id}")
        try:
            current = self._records.get(account_id) or EntitlementState()
            updated = fn(current)
            self._records[account_id] = updated
            return updated
        finally:
            lock.release()

    def account_for_customer(self, customer_id: str) -> str | None:
        return self._customer_accounts.get(customer_id)

    def link_customer(self, account_id: str, customer_id: str) -> None:
        with self._table_lock:
            existing_account = self._customer_accounts.get(customer_id)
            existing_customer = self._account_customers.get(account_id)
            if existing_account == account_id and existing_customer == customer_id:
                return
            if existing_account is not None or existing_customer is not None:
                raise CustomerAlreadyLinked(customer_id, account_id)
            self._customer_accounts[customer_id] = account_id
            self._account_customers[account_id] = customer_id
        logger.info("Linked provider customer %s to account %s", customer_id, account_id)


class RedisEntitlementStore:
    """Redis-backed store.

    Keys:
        billing:entitlement:{account_id}       JSON EntitlementState
        billing:customer:{customer_id}         account id
        billing:account-customer:{account_id}  customer id
    """

    def __init__(self, client, max_attempts: int = _MAX_TRANSACTION_ATTEMPTS) -> None:
        self._redis = client
        self._max_attempts = max_attempts

    @staticmethod
    def _entitlement_key(account_id: str) -> str:
        return f"{_KEY_PREFIX}:entitlement:{account_id}"

    @staticmethod
    def _customer_key(customer_id: str) -> str:
        return f"{_KEY_PREFIX}:customer:{customer_id}"

    @staticmethod
    def _account_customer_key(account_id: str) -> str:
        return f"{_KEY_PREFIX}:account-customer:{account_id}"

    def read(self, account_id: str) -> EntitlementState:
        try:
            raw = self._redis.get(self._entitlement_key(account_id))
        except RedisError as exc:
            raise PersistenceFailure(f"entitlement read failed for {account_id}") from exc
        return EntitlementState.from_json(raw) if raw else EntitlementState()

    def read_modify_write(self, account_id: str, fn: Mutation) -> EntitlementState:
        key = self._entitlement_key(account_id)
        for attempt in range(1, self._max_attempts + 1):
            try:
                with self._redis.pipeline() as pipe:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    current = EntitlementState.from_json(raw) if raw else EntitlementState()
                    updated = fn(current)
                    pipe.multi()
                    pipe.set(key, updated.to_json())
                    pipe.execute()
                    return updated
            except WatchError:
                logger.debug("Entitlement write conflict on %s (attempt %d)", account_id, attempt)
                continue
            except RedisError as exc:
                raise PersistenceFailure(f"entitlement write failed for {account_id}") from exc
        raise PersistenceFailure(
            f"entitlement write for {account_id} conflicted {self._max_attempts} times"
        )

    def account_for_customer(self, customer_id: str) -> str | None:
        try:
            return self._redis.get(self._customer_key(customer_id))
        except RedisError as exc:
            raise PersistenceFailure(f"customer lookup failed for {customer_id}") from exc

    def link_customer(self, account_id: str, customer_id: str) -> None:
        account_key = self._account_customer_key(account_id)
        customer_key = self._customer_key(customer_id)
        try:
            claimed_account = self._redis.set(account_key, customer_id, nx=True)
            if not claimed_account and self._redis.get(account_key) != customer_id:
                raise CustomerAlreadyLinked(customer_id, account_id)
            if not self._redis.set(customer_key, account_id, nx=True):
                if self._redis.get(customer_key) != account_id:
                    if claimed_account:
                        self._redis.delete(account_key)
                    raise CustomerAlreadyLinked(customer_id, account_id)
        except RedisError as exc:
            raise PersistenceFailure(f"customer link failed for {account_id}") from exc
        logger.info("Linked provider customer %s to account %s", customer_id, account_id)
