"""Admission controller: moving-window request limiting per (identifier, route class).

Counting is delegated to the ``limits`` moving-window strategy (the engine
under slowapi), backed by ``memory://`` or a shared ``redis://`` store.

Failure contract:
- Every backend call is bounded by ``timeout_seconds``
- Backend error or timeout -> the route class's configured policy
  (fail-open admits, fail-closed denies); never raises into the request path
- ``0 <= remaining <= limit`` and ``reset_at >= now`` on every decision
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from enum import Enum

from limits import RateLimitItemPerSecond
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

from billing.config import Settings

logger = logging.getLogger(__name__)

_KEY_NAMESPACE = "admission"


class RouteClass(str, Enum):
    INGESTION = "ingestion"
    REALTIME = "realtime"


class FailurePolicy(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class AdmissionPolicy:
    limit: int
    window_seconds: int
    on_backend_failure: FailurePolicy = FailurePolicy.OPEN

    def __post_init__(self) -> None:
        if self.limit < 1 or self.window_seconds < 1:
            raise ValueError("admission limit and window must be positive")

    @property
    def item(self) -> RateLimitItemPerSecond:
        return RateLimitItemPerSecond(self.limit, self.window_seconds)


DEFAULT_POLICIES: dict[RouteClass, AdmissionPolicy] = {
    RouteClass.INGESTION: AdmissionPolicy(300, 60, FailurePolicy.OPEN),
    RouteClass.REALTIME: AdmissionPolicy(30, 60, FailurePolicy.CLOSED),
}


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    degraded: bool = False

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_at - time.time()))

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class AdmissionController:
    """Sliding-window limiter with per-route-class buckets and failure policy.

    With a timeout, backend calls run on a small worker pool created on first
    use. A call that times out still finishes in the background, so its hit
    is still recorded and consumes quota. ``close()`` shuts the pool down;
    a later call starts a fresh one.
    """

    def __init__(
        self,
        storage: Storage,
        policies: dict[RouteClass, AdmissionPolicy] | None = None,
        *,
        timeout_seconds: float | None = 0.25,
        max_workers: int = 8,
    ) -> None:
        self._limiter = MovingWindowRateLimiter(storage)
        self._policies = {**DEFAULT_POLICIES, **(policies or {})}
        self._timeout = timeout_seconds
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    def policy(self, route_class: RouteClass) -> AdmissionPolicy:
        return self._policies[route_class]

    def allow(self, identifier: str, route_class: RouteClass) -> AdmissionDecision:
        """Count one request for (identifier, route_class) and decide."""
        policy = self._policies[route_class]
        try:
            if self._timeout is None:
                return self._hit(policy, identifier, route_class)
            future = self._pool().submit(self._hit, policy, identifier, route_class)
            return future.result(timeout=self._timeout)
        except FuturesTimeout:
            logger.warning(
                "Admission backend timed out after %.3fs for %s/%s",
                self._timeout,
                route_class.value,
                identifier,
            )
        except Exception:
            logger.warning(
                "Admission backend unavailable for %s/%s",
                route_class.value,
                identifier,
                exc_info=True,
            )
        return self._fallback(policy, route_class)

    def close(self) -> None:
        """Shut down the worker pool without waiting for in-flight calls."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
            logger.info("Admission worker pool shut down")

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="admission"
                )
            return self._executor

    def _hit(self, policy: AdmissionPolicy, identifier: str, route_class: RouteClass) -> AdmissionDecision:
        item = policy.item
        allowed = self._limiter.hit(item, _KEY_NAMESPACE, route_class.value, identifier)
        reset_at, remaining = self._limiter.get_window_stats(
            item, _KEY_NAMESPACE, route_class.value, identifier
        )
        now = time.time()
        return AdmissionDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, min(int(remaining), policy.limit)),
            reset_at=max(float(reset_at), now),
        )

    @staticmethod
    def _fallback(policy: AdmissionPolicy, route_class: RouteClass) -> AdmissionDecision:
        allowed = policy.on_backend_failure is FailurePolicy.OPEN
        logger.info("Admission failing %s for %s", policy.on_backend_failure.value, route_class.value)
        return AdmissionDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=policy.limit if allowed else 0,
            reset_at=time.time() + policy.window_seconds,
            degraded=True,
        )


def create_admission_controller(settings: Settings) -> AdmissionController:
    """Build the controller from settings; Redis URIs get bounded socket timeouts."""
    options = {}
    if settings.rate_limit_storage_uri.startswith(("redis://", "rediss://")):
        options = {
            "socket_timeout": settings.admission_timeout_seconds,
            "socket_connect_timeout": settings.admission_timeout_seconds,
        }
    storage = storage_from_string(settings.rate_limit_storage_uri, **options)

    def _policy(limit: int, window: int, fail_open: bool) -> AdmissionPolicy:
        return AdmissionPolicy(limit, window, FailurePolicy.OPEN if fail_open else FailurePolicy.CLOSED)

    return AdmissionController(
        storage,
        {
            RouteClass.INGESTION: _policy(
                settings.ingestion_rate_limit,
                settings.ingestion_rate_window_seconds,
                settings.ingestion_fail_open,
            ),
            RouteClass.REALTIME: _policy(
                settings.realtime_rate_limit,
                settings.realtime_rate_window_seconds,
                settings.realtime_fail_open,
            ),
        },
        timeout_seconds=settings.admission_timeout_seconds,
    )
