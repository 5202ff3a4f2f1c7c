# distributed_lock.py

import logging
import threading
import time
import uuid
from typing import Callable, Optional

from lock_store import NO_EXPIRATION, Delete, Expire, LockStore, TransactionConflictError

# pause between acquisition attempts; constant, no backoff
DEFAULT_POLL_INTERVAL = 0.001


def configure_logging(level: int = logging.DEBUG, filename: Optional[str] = "distributed_lock.log") -> None:
    """
    Send log records to a file (or the console when `filename` is None).
    Meant for scripts; the library itself never configures logging.
    """
    handler = logging.FileHandler(filename) if filename else logging.StreamHandler()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[handler],
    )


class LockError(Exception):
    """Base class for lock failures."""


class LockAcquisitionError(LockError, TimeoutError):
    """The lock could not be acquired before `acquire_timeout` elapsed."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for '{key}'")
        self.key = key
        self.timeout = timeout


class LockExtensionError(LockError):
    """The lease could not be extended because this handle no longer owns the key."""

    def __init__(self, key: str, holder_id: str):
        super().__init__(f"Cannot extend lock '{key}': not held by {holder_id}")
        self.key = key
        self.holder_id = holder_id


Hook = Callable[[LockStore], None]


class DistributedLock:
    """
    Mutual-exclusion lock on one key of a shared store.

    Parameters:
        store (LockStore): backing key-value store
        resource (str): lock name
        acquire_timeout (float): max seconds to keep polling for the lock
        lease_duration (int): lease time-to-live in seconds
        logger (logging.Logger): logger for this handle (module logger if omitted)
        poll_interval (float): pause between acquisition attempts
        prefix (str): namespace prepended to `resource` to form the key
        auto_renew (bool): if True, extend the lease in background until release

    Usage:
        try:
            with DistributedLock(store, "res", acquire_timeout=10, lease_duration=30) as lock:
                # critical section
                pass
        except LockAcquisitionError:
            # lock acquisition failed
            pass

    Not reentrant: a second lock() on a held handle polls against itself
    until it times out.
    """

    def __init__(
        self,
        store: LockStore,
        resource: str,
        acquire_timeout: float = 5,
        lease_duration: int = 10,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        prefix: str = "/locks/",
        auto_renew: bool = False,
    ):
        self.store = store
        self.resource = resource
        self.key = f"{prefix}{resource}"
        self.acquire_timeout = acquire_timeout
        self.lease_duration = lease_duration
        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval = poll_interval
        self.auto_renew = auto_renew
        # unique per handle; ownership is value equality with this id
        self.holder_id = str(uuid.uuid4())

        self.before_release_hook: Optional[Hook] = None
        self.before_extend_hook: Optional[Hook] = None

        # internal for renew thread
        self._stop_event = None
        self._renew_thread = None

    # ---------- public API ----------

    def lock(self, work: Optional[Callable[["DistributedLock"], object]] = None) -> "DistributedLock":
        """
        Acquire the lock or raise LockAcquisitionError.

        If `work` is given it is called with this handle while the lock is held,
        and the lock is released afterwards even if `work` raises.
        """
        if not self.acquire():
            self.logger.error("Timeout acquiring lock '%s' after %ss", self.key, self.acquire_timeout)
            raise LockAcquisitionError(self.key, self.acquire_timeout)

        if self.auto_renew:
            self._start_renewal()

        if work is not None:
            try:
                work(self)
            finally:
                self.unlock()
        return self

    def unlock(self) -> bool:
        """Release the lock. Returns False when this handle was not the owner."""
        self._stop_renewal()
        return self.release()

    @property
    def is_locked(self) -> bool:
        """
        Returns True if the store still attributes the key to this handle.
        """
        return self._is_owner()

    def ttl_remaining(self) -> int:
        """Seconds left on the lease, or the store's NO_EXPIRATION / KEY_MISSING marker."""
        return self.store.get_expiration(self.key)

    def __enter__(self):
        return self.lock()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unlock()

    # ---------- protocol ----------

    def acquire(self) -> bool:
        """
        Poll until the key is ours or `acquire_timeout` elapses.
        """
        try_until = time.monotonic() + self.acquire_timeout

        while time.monotonic() < try_until:
            self.logger.debug("Attempting to acquire lock '%s'", self.key)

            if self.store.set_if_absent(self.key, self.holder_id):
                self.logger.info("Lock '%s' acquired by %s", self.key, self.holder_id)
                # a crash before this line leaves the key without a lease;
                # the next contender repairs it below
                self._add_expiration()
                return True

            if self.has_missing_expiration():
                # holder most likely died before setting its lease; bound how
                # long it can block us, but don't take the key
                self.logger.debug("Expiration missing on lock '%s'", self.key)
                self._add_expiration()

            time.sleep(self.poll_interval)

        return False

    def release(self) -> bool:
        """
        Delete the key if we still own it, retrying while the key changes
        under our watch. Returns False (and deletes nothing) if not owner.
        """
        while True:
            self.store.watch(self.key)
            try:
                self.logger.debug("Releasing '%s'...", self.key)
                if not self._is_owner():
                    self.logger.debug("'%s' is no longer held by %s", self.key, self.holder_id)
                    return False

                if self.before_release_hook:
                    self.logger.debug("Calling before-release hook for '%s'", self.key)
                    self.before_release_hook(self.store)

                self.store.commit([Delete(self.key)])
                self.logger.info("Lock '%s' released by %s", self.key, self.holder_id)
                return True
            except TransactionConflictError:
                self.logger.warning("'%s' changed while attempting to release key - retrying", self.key)
            finally:
                self.store.unwatch(self.key)

    def extend(self, duration: Optional[int] = None) -> None:
        """
        Reset the lease to `duration` seconds (default: lease_duration).

        Raises:
            LockExtensionError if the key is no longer ours.
        """
        duration = self.lease_duration if duration is None else duration

        while True:
            self.store.watch(self.key)
            try:
                if not self._is_owner():
                    raise LockExtensionError(self.key, self.holder_id)

                if self.before_extend_hook:
                    self.logger.debug("Calling before-extend hook for '%s'", self.key)
                    self.before_extend_hook(self.store)

                self.store.commit([Expire(self.key, duration)])
                self.logger.info("Lock '%s' extended by %ss", self.key, duration)
                return
            except TransactionConflictError:
                self.logger.warning("'%s' changed while attempting to extend lease - retrying", self.key)
            finally:
                self.store.unwatch(self.key)

    def has_missing_expiration(self) -> bool:
        return self.store.get_expiration(self.key) == NO_EXPIRATION

    # ---------- helpers ----------

    def _is_owner(self) -> bool:
        return self.store.get(self.key) == self.holder_id

    def _add_expiration(self) -> None:
        self.logger.debug("Adding expiration of %s seconds to '%s'", self.lease_duration, self.key)
        self.store.set_expiration(self.key, self.lease_duration)

    def _start_renewal(self) -> None:
        self._stop_event = threading.Event()

        def _renew_loop():
            interval = self.lease_duration / 2.0
            while not self._stop_event.wait(interval):
                try:
                    self.extend(self.lease_duration)
                except LockExtensionError as e:
                    self.logger.error("Lost lock while renewing: %s", e)
                    break
                except Exception as e:
                    self.logger.error("Error renewing lock '%s': %s", self.key, e)
                    break

        self._renew_thread = threading.Thread(target=_renew_loop, daemon=True)
        self._renew_thread.start()

    def _stop_renewal(self) -> None:
        if self._stop_event is None:
            return
        self._stop_event.set()
        if self._renew_thread is not threading.current_thread():
            self._renew_thread.join()
        self._stop_event = None
        self._renew_thread = None


def lock(store: LockStore, resource: str, work=None, **options) -> DistributedLock:
    """
    Shortcut for DistributedLock(store, resource, **options).lock(work).
    """
    return DistributedLock(store, resource, **options).lock(work)


# === Example usage ===
if __name__ == "__main__":
    from etcd_store import EtcdLockStore

    configure_logging(filename=None)
    store = EtcdLockStore.from_env()

    with DistributedLock(store, "job42", acquire_timeout=5, lease_duration=30, auto_renew=True) as job:
        print("Lease has", job.ttl_remaining(), "seconds remaining")
        # … do work …
        if not job.is_locked:
            raise RuntimeError("Oops, we lost the lock!")
        else:
            print("Lock is still held")
