import pytest

from lock_store import InMemoryLockStore


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store():
    return InMemoryLockStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_store(clock):
    """In-memory store whose leases only lapse when `clock` is advanced."""
    return InMemoryLockStore(clock=clock)


@pytest.fixture
def etcd_store():
    pytest.importorskip("etcd3")
    from etcd_store import EtcdLockStore

    store = EtcdLockStore.from_env()
    try:
        store.client.status()
    except Exception as e:
        pytest.skip(f"etcd not reachable: {e}")

    # remove any leftover locks
    store.client.delete_prefix("/locks/")
    yield store
    store.client.delete_prefix("/locks/")
