"""
Module: costing_kernel.services.product_lock
Responsibility: Serialize mutation of one product's lot timeline.  Every
    mutating costing call (consume, release, cascade, stock events, sale
    operations) acquires the product's lock before reading lots.
Architecture position: Kernel > Services.  Used by costing_services; has
    no knowledge of lots or sale lines.

Invariants enforced:
    - At most one transaction at a time mutates a given product's lots and
      sale line costs.  Different products never contend.
    - Re-entrant within one Session: a cascade that calls the consumer
      acquires the same product again without blocking.
    - Held until the Session's outermost transaction ends (commit, rollback
      or close), never released early.
    - The in-process registry only holds products that some session holds
      or waits on.  The last session to let go removes the entry.

Failure modes:
    - ProductLockTimeoutError when another transaction holds the product
      longer than the configured timeout.  Nothing has been written yet
      when this is raised; the caller may retry the whole operation.

Two layers:
    1. An in-process lock per product id (threads of one process).
    2. On PostgreSQL, ``pg_advisory_xact_lock`` keyed by a 64-bit hash of
       the product id (other processes).  The database releases it at
       commit or abort.
"""

import hashlib
import threading
import time
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from costing_kernel.exceptions import ProductLockTimeoutError
from costing_kernel.logging_config import get_logger

logger = get_logger("services.product_lock")

_HELD_KEY = "costing_product_locks"
_LISTENER_KEY = "costing_product_lock_listener"


class _LockEntry:
    """A product lock and the number of sessions holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


_registry_lock = threading.Lock()
_product_locks: dict[str, _LockEntry] = {}


def _checkout(product_key: str) -> threading.Lock:
    with _registry_lock:
        entry = _product_locks.get(product_key)
        if entry is None:
            entry = _LockEntry()
            _product_locks[product_key] = entry
        entry.users += 1
        return entry.lock


def _checkin(product_key: str) -> None:
    with _registry_lock:
        entry = _product_locks[product_key]
        entry.users -= 1
        if entry.users == 0:
            del _product_locks[product_key]


def advisory_lock_key(product_id: UUID | str) -> int:
    """Signed 64-bit advisory lock key derived from a product id."""
    digest = hashlib.blake2b(str(product_id).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _release_held_locks(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    held: dict[str, threading.Lock] = session.info.pop(_HELD_KEY, {})
    for product_key, lock in held.items():
        lock.release()
        _checkin(product_key)
        logger.debug("product_lock_released", extra={"product_id": product_key})


class ProductLockService:
    """
    Per-product timeline lock bound to a Session's transaction.

    Contract:
        ``acquire(product_id)`` returns once the calling Session holds the
        product.  The lock is released automatically when the Session's
        outermost transaction ends.

    Non-goals:
        - Does NOT retry.  Callers retry whole operations.
    """

    def __init__(
        self,
        session: Session,
        timeout_seconds: float = 30.0,
        use_advisory_locks: bool = True,
    ):
        self._session = session
        self._timeout_seconds = timeout_seconds
        self._use_advisory_locks = use_advisory_locks

    def holds(self, product_id: UUID | str) -> bool:
        """True if this Session currently holds the product's lock."""
        return str(product_id) in self._session.info.get(_HELD_KEY, {})

    def acquire(self, product_id: UUID | str) -> None:
        """
        Acquire the product's timeline lock for this Session's transaction.

        Raises:
            ProductLockTimeoutError: If the lock is not obtained in time.
        """
        product_key = str(product_id)
        if self.holds(product_key):
            return

        if not self._session.in_transaction():
            self._session.begin()
        self._ensure_release_listener()

        start = time.monotonic()
        lock = _checkout(product_key)
        if not lock.acquire(timeout=self._timeout_seconds):
            _checkin(product_key)
            logger.warning(
                "product_lock_timeout",
                extra={
                    "product_id": product_key,
                    "timeout_seconds": self._timeout_seconds,
                    "layer": "process",
                },
            )
            raise ProductLockTimeoutError(product_key, self._timeout_seconds)

        self._session.info.setdefault(_HELD_KEY, {})[product_key] = lock

        if self._use_advisory_locks and self._is_postgres():
            self._acquire_advisory(product_key)

        logger.debug(
            "product_lock_acquired",
            extra={
                "product_id": product_key,
                "wait_ms": round((time.monotonic() - start) * 1000, 2),
            },
        )

    def _acquire_advisory(self, product_key: str) -> None:
        timeout_ms = max(int(self._timeout_seconds * 1000), 1)
        try:
            self._session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
            self._session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": advisory_lock_key(product_key)},
            )
        except OperationalError as exc:
            logger.warning(
                "product_lock_timeout",
                extra={
                    "product_id": product_key,
                    "timeout_seconds": self._timeout_seconds,
                    "layer": "advisory",
                },
            )
            raise ProductLockTimeoutError(product_key, self._timeout_seconds) from exc

    def _ensure_release_listener(self) -> None:
        if self._session.info.get(_LISTENER_KEY):
            return
        event.listen(self._session, "after_transaction_end", _release_held_locks)
        self._session.info[_LISTENER_KEY] = True

    def _is_postgres(self) -> bool:
        return self._session.get_bind().dialect.name == "postgresql"
