import typing
import logging
import threading
from photosync.blob.blob_file import blob_key

log = logging.getLogger(__name__)


class WaitingSubscriberRegistry:
    """
    Photo id -> set of subscriber handles waiting for that photo to land on disk.

    Registration happens from whatever thread renders photos while the flush happens on the
    event loop, every access goes through the lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._waiting: typing.Dict[str, typing.Set[typing.Hashable]] = {}

    def __len__(self):
        with self._lock:
            return len(self._waiting)

    def add(self, blob_id: str, handle: typing.Hashable) -> bool:
        key = blob_key(blob_id)
        if not key:
            return False
        with self._lock:
            self._waiting.setdefault(key, set()).add(handle)
        return True

    def get_waiting(self, blob_id: str) -> typing.FrozenSet[typing.Hashable]:
        with self._lock:
            return frozenset(self._waiting.get(blob_key(blob_id), ()))

    def pop(self, blob_id: str) -> typing.Set[typing.Hashable]:
        """Take and forget every handle registered for the photo."""
        with self._lock:
            return self._waiting.pop(blob_key(blob_id), set())

    def clear(self):
        with self._lock:
            self._waiting.clear()
