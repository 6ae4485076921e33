import time
import typing
import logging
from photosync.error import InvalidChunkError, TransferLimitError
from photosync.blob import CHUNK_SIZE, MAX_BLOB_SIZE, MAX_CHUNK_COUNT

log = logging.getLogger(__name__)

TransferKey = typing.Hashable


def get_chunk_count(total_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return (total_size + chunk_size - 1) // chunk_size


def get_chunk_length(total_size: int, chunk_index: int, chunk_size: int = CHUNK_SIZE) -> int:
    return max(0, min(chunk_size, total_size - chunk_index * chunk_size))


def split_blob(blob_bytes: bytes, chunk_size: int = CHUNK_SIZE) -> typing.Iterator[typing.Tuple[int, bytes]]:
    """
    Yield (chunk index, chunk bytes) covering the blob in order, the last chunk may be shorter
    """
    view = memoryview(blob_bytes)
    for chunk_index in range(get_chunk_count(len(blob_bytes), chunk_size)):
        offset = chunk_index * chunk_size
        yield chunk_index, bytes(view[offset:offset + chunk_size])


def check_chunk_bounds(total_size: int, chunk_index: int, chunk_count: int, data: bytes,
                       chunk_size: int = CHUNK_SIZE):
    if not 0 < total_size <= MAX_BLOB_SIZE:
        raise InvalidChunkError(f"total size {total_size} out of range")
    if not 0 < chunk_count <= MAX_CHUNK_COUNT:
        raise InvalidChunkError(f"chunk count {chunk_count} out of range")
    if chunk_count != get_chunk_count(total_size, chunk_size):
        raise InvalidChunkError(f"chunk count {chunk_count} doesn't match total size {total_size}")
    if not 0 <= chunk_index < chunk_count:
        raise InvalidChunkError(f"chunk index {chunk_index} out of range")
    if data is None or len(data) != get_chunk_length(total_size, chunk_index, chunk_size):
        raise InvalidChunkError(f"unexpected length for chunk {chunk_index}")


class ReassemblyState:
    """
    A partially received photo: a buffer of the announced size and which chunks have landed in it.
    """
    __slots__ = [
        'total_size',
        'chunk_count',
        'chunk_size',
        'buffer',
        'received',
        'received_count',
        'last_touched',
    ]

    def __init__(self, total_size: int, chunk_count: int, chunk_size: int = CHUNK_SIZE,
                 now: typing.Optional[float] = None):
        self.total_size = total_size
        self.chunk_count = chunk_count
        self.chunk_size = chunk_size
        self.buffer = bytearray(total_size)
        self.received = [False] * chunk_count
        self.received_count = 0
        self.last_touched = now if now is not None else time.monotonic()

    def matches(self, total_size: int, chunk_count: int) -> bool:
        return self.total_size == total_size and self.chunk_count == chunk_count

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.chunk_count

    def apply_chunk(self, chunk_index: int, data: bytes) -> bool:
        """
        Copy a chunk into place. Returns False without side effects if it was already applied.
        """
        if not 0 <= chunk_index < self.chunk_count:
            raise InvalidChunkError(f"chunk index {chunk_index} out of range")
        offset = chunk_index * self.chunk_size
        if offset + len(data) > self.total_size or not data:
            raise InvalidChunkError(f"chunk {chunk_index} overruns the buffer")
        if self.received[chunk_index]:
            return False
        self.buffer[offset:offset + len(data)] = data
        self.received[chunk_index] = True
        self.received_count += 1
        return True


class ReassemblyTracker:
    """
    Partial transfers indexed by transfer key. A transfer leaves the index the moment its
    last chunk lands, or when it is pruned for being idle.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, max_transfers: int = 0,
                 time_fn: typing.Callable[[], float] = time.monotonic):
        self.chunk_size = chunk_size
        self.max_transfers = max_transfers
        self._time = time_fn
        self.transfers: typing.Dict[TransferKey, ReassemblyState] = {}

    def __len__(self):
        return len(self.transfers)

    def __contains__(self, key: TransferKey):
        return key in self.transfers

    def get(self, key: TransferKey) -> typing.Optional[ReassemblyState]:
        return self.transfers.get(key)

    def receive_chunk(self, key: TransferKey, total_size: int, chunk_index: int, chunk_count: int,
                      data: bytes) -> typing.Optional[bytes]:
        """
        Apply one chunk to the transfer for key, returns the assembled bytes when it completes the transfer

        Malformed chunks raise InvalidChunkError before any state is touched. A chunk announcing a
        different size or count than the tracked transfer starts the transfer over.
        """
        check_chunk_bounds(total_size, chunk_index, chunk_count, data, self.chunk_size)
        now = self._time()
        state = self.transfers.get(key)
        if state is None or not state.matches(total_size, chunk_count):
            if state is None and self.max_transfers and len(self.transfers) >= self.max_transfers:
                raise TransferLimitError(self.max_transfers)
            if state is not None:
                log.debug("restarting transfer %s (%i -> %i bytes)", key, state.total_size, total_size)
            state = ReassemblyState(total_size, chunk_count, self.chunk_size, now)
            self.transfers[key] = state
        state.last_touched = now
        if not state.apply_chunk(chunk_index, data):
            return None
        if not state.is_complete:
            return None
        del self.transfers[key]
        return bytes(state.buffer)

    def discard(self, key: TransferKey) -> bool:
        return self.transfers.pop(key, None) is not None

    def prune(self, stale_timeout: float, now: typing.Optional[float] = None) -> typing.List[TransferKey]:
        if not self.transfers:
            return []
        now = now if now is not None else self._time()
        to_remove = [
            key for key, state in self.transfers.items() if (now - state.last_touched) > stale_timeout
        ]
        for key in to_remove:
            del self.transfers[key]
        return to_remove

    def clear(self):
        self.transfers.clear()
