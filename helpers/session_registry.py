import threading
from types import MappingProxyType
from typing import Generic, List, Mapping, Optional, TypeVar

T = TypeVar('T')


class SessionRegistry(Generic[T]):
    """Name -> handle map with copy-on-write snapshots.

    Writers serialise on a lock and swap in a fresh read-only mapping, so readers
    (the capture scheduler, status routes) never block and never see a partial update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, T] = MappingProxyType({})

    def try_add(self, name: str, handle: T) -> bool:
        with self._lock:
            if name in self._snapshot:
                return False
            updated = dict(self._snapshot)
            updated[name] = handle
            self._snapshot = MappingProxyType(updated)
            return True

    def try_remove(self, name: str) -> Optional[T]:
        with self._lock:
            if name not in self._snapshot:
                return None
            updated = dict(self._snapshot)
            handle = updated.pop(name)
            self._snapshot = MappingProxyType(updated)
            return handle

    def try_get(self, name: str) -> Optional[T]:
        return self._snapshot.get(name)

    def snapshot(self) -> Mapping[str, T]:
        return self._snapshot

    def snapshot_values(self) -> List[T]:
        return list(self._snapshot.values())

    def keys(self) -> List[str]:
        return list(self._snapshot.keys())

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, name: object) -> bool:
        return name in self._snapshot
