# etcd_store.py

"""
LockStore implementation on etcd v3.

etcd has no WATCH/MULTI session, so optimistic transactions are expressed the
etcd way: watch() remembers the key's mod_revision and commit() runs a single
transaction guarded by `mod_revision(key) == remembered`.
Expirations are leases; a key put without a lease has no expiration.
"""

import logging
import os
import threading
from typing import Dict, Optional, Sequence, Tuple

import etcd3
import grpc
from etcd3.exceptions import Etcd3Exception

from lock_store import (
    KEY_MISSING,
    NO_EXPIRATION,
    Delete,
    Expire,
    Operation,
    TransactionConflictError,
)

logger = logging.getLogger(__name__)


def safe_revoke(client, lease_id: int) -> None:
    """
    Try to revoke a lease, but ignore if the lease has already expired.
    """
    try:
        client.revoke_lease(lease_id)
        logger.debug("Lease %s revoked", lease_id)
    except (Etcd3Exception, grpc.RpcError) as e:
        # etcd returns an error if the lease is not found (already expired)
        if "requested lease not found" not in str(e):
            raise
        logger.warning("Lease %s not found (already expired)", lease_id)


class EtcdLockStore:
    """
    Store backed by an etcd3 client.

    Parameters:
        client: an `etcd3.Etcd3Client`

    Usage:
        store = EtcdLockStore.from_env()
        with DistributedLock(store, "job42", lease_duration=30):
            ...
    """

    def __init__(self, client):
        self.client = client
        self._local = threading.local()

    @classmethod
    def from_env(cls) -> "EtcdLockStore":
        """
        Build a client from ETCD_HOST / ETCD_PORT / ETCD_TIMEOUT.
        """
        host = os.environ.get("ETCD_HOST", "127.0.0.1")
        port = int(os.environ.get("ETCD_PORT", "2379"))
        timeout = os.environ.get("ETCD_TIMEOUT")
        logger.debug("Connecting to etcd at %s:%s", host, port)
        client = etcd3.client(
            host=host,
            port=port,
            timeout=float(timeout) if timeout else None,
        )
        return cls(client)

    def _watched(self) -> Dict[str, Tuple[int, Optional[bytes], int]]:
        watched = getattr(self._local, "watched", None)
        if watched is None:
            watched = self._local.watched = {}
        return watched

    def _read(self, key: str):
        """Return (value_bytes, mod_revision, lease_id); mod_revision is 0 if absent."""
        value, meta = self.client.get(key)
        if value is None:
            return None, 0, 0
        return value, meta.mod_revision, meta.lease_id

    # ---------- LockStore ----------

    def set_if_absent(self, key: str, value: str) -> bool:
        created, _ = self.client.transaction(
            compare=[self.client.transactions.create(key) == 0],
            success=[self.client.transactions.put(key, value)],
            failure=[],
        )
        return created

    def get(self, key: str) -> Optional[str]:
        value, _ = self.client.get(key)
        return value.decode() if value is not None else None

    def set_expiration(self, key: str, seconds: int) -> bool:
        lease = self.client.lease(seconds)
        while True:
            value, revision, old_lease_id = self._read(key)
            if value is None:
                logger.debug("Key %s vanished before expiration could be set", key)
                safe_revoke(self.client, lease.id)
                return False

            applied, _ = self.client.transaction(
                compare=[self.client.transactions.mod(key) == revision],
                success=[self.client.transactions.put(key, value, lease.id)],
                failure=[],
            )
            if applied:
                logger.debug("Attached lease %s (%ss) to %s", lease.id, seconds, key)
                if old_lease_id:
                    safe_revoke(self.client, old_lease_id)
                return True
            logger.debug("Key %s moved while setting expiration; retrying", key)

    def get_expiration(self, key: str) -> int:
        value, _, lease_id = self._read(key)
        if value is None:
            return KEY_MISSING
        if not lease_id:
            return NO_EXPIRATION
        ttl = self.client.get_lease_info(lease_id).TTL
        # -1 means the lease lapsed and the key is being removed
        return ttl if ttl >= 0 else KEY_MISSING

    def delete(self, key: str) -> bool:
        return self.client.delete(key)

    def watch(self, key: str) -> None:
        value, revision, lease_id = self._read(key)
        self._watched()[key] = (revision, value, lease_id)

    def unwatch(self, key: str) -> None:
        self._watched().pop(key, None)

    def commit(self, operations: Sequence[Operation]) -> None:
        watched = self._watched()
        granted = []
        superseded = []
        try:
            compare = [
                self.client.transactions.mod(key) == revision
                for key, (revision, _, _) in watched.items()
            ]
            success = []
            for op in operations:
                if isinstance(op, Delete):
                    success.append(self.client.transactions.delete(op.key))
                elif isinstance(op, Expire):
                    _, value, old_lease_id = watched.get(op.key, (0, None, 0))
                    if value is None:
                        # nothing to attach a lease to, same as expiring a missing key
                        continue
                    lease = self.client.lease(op.seconds)
                    granted.append(lease.id)
                    success.append(self.client.transactions.put(op.key, value, lease.id))
                    if old_lease_id:
                        superseded.append(old_lease_id)
                else:
                    raise TypeError(f"Unsupported operation: {op!r}")

            committed, _ = self.client.transaction(compare=compare, success=success, failure=[])
            if not committed:
                for lease_id in granted:
                    safe_revoke(self.client, lease_id)
                conflicted = next(iter(watched), None)
                raise TransactionConflictError(conflicted)
            for lease_id in superseded:
                safe_revoke(self.client, lease_id)
        finally:
            watched.clear()
