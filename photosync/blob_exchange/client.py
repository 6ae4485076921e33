import typing
import asyncio
import logging
from photosync.error import (
    BlobError, InvalidBlobIdentifierError, InvalidChunkError, TransferLimitError, DownloadFailedError
)
from photosync.blob import CHUNK_SIZE, MAX_BLOB_SIZE
from photosync.blob.assembly import ReassemblyTracker
from photosync.blob.blob_file import normalize_blob_id, blob_key, is_valid_blob_id
from photosync.blob_exchange.serialization import FetchRequest, BlobChunk, BlobAck, SeenNotice
from photosync.blob_exchange.waiting import WaitingSubscriberRegistry
from photosync.blob_exchange.protocol import (
    Address, BlobExchangeProtocol, format_address, resolve_host,
    chunks_received_metric, transfers_completed_metric, transfers_rejected_metric,
)

if typing.TYPE_CHECKING:
    from photosync.conf import Config
    from photosync.blob.blob_manager import BlobManager

log = logging.getLogger(__name__)

ArrivedCallback = typing.Callable[[str], None]
NotifyCallback = typing.Callable[[typing.Hashable, str], None]


class BlobExchangeClient:
    """
    Requesting side of the photo exchange.

    Fetches are fire-and-forget: request_if_missing sends at most one request per photo per throttle
    window and returns immediately. Chunks and acks are only accepted from the server address, which is
    resolved once in connect. Download chunks are reassembled by photo id, the finished photo is
    validated and written to disk and only then are the waiting subscribers for it notified.

    Everything except note_waiting must be called from the event loop thread.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, blob_manager: 'BlobManager', config: 'Config',
                 server_address: Address, blob_arrived_callback: typing.Optional[ArrivedCallback] = None,
                 notify_callback: typing.Optional[NotifyCallback] = None):
        self.loop = loop
        self.blob_manager = blob_manager
        self.config = config
        self.server_address = server_address
        self.blob_arrived_callback = blob_arrived_callback
        self.notify_callback = notify_callback
        self.tracker = ReassemblyTracker(CHUNK_SIZE, config.max_incoming_transfers, loop.time)
        self.waiting = WaitingSubscriberRegistry()
        self.requested_at: typing.Dict[str, float] = {}
        self.seen_pinged_at: typing.Dict[str, float] = {}
        self.protocol = BlobExchangeProtocol(loop)
        self.protocol.add_handler(BlobChunk.kind, self.handle_chunk)
        self.protocol.add_handler(BlobAck.kind, self.handle_ack)
        self.pending: typing.Set[asyncio.Task] = set()
        self._download_futs: typing.Dict[str, typing.List[asyncio.Future]] = {}
        self._upload_futs: typing.Dict[str, typing.List[asyncio.Future]] = {}

    async def connect(self, interface: str = '0.0.0.0', port: int = 0):
        host, server_port = self.server_address
        self.server_address = (await resolve_host(host, server_port), server_port)
        await self.loop.create_datagram_endpoint(lambda: self.protocol, local_addr=(interface, port))
        log.debug("photo client bound to %s:%i, server is %s", interface, port, format_address(self.server_address))

    def close(self):
        for task in list(self.pending):
            task.cancel()
        for futs in list(self._download_futs.values()) + list(self._upload_futs.values()):
            for fut in futs:
                if not fut.done():
                    fut.cancel()
        self._download_futs.clear()
        self._upload_futs.clear()
        self.tracker.clear()
        self.protocol.close()

    def _track(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return task

    def request_if_missing(self, blob_id: str) -> bool:
        """
        Ask the server for the photo unless it is already on disk or was asked for within the throttle
        window. Returns True if a fetch request was sent.
        """
        blob_id = normalize_blob_id(blob_id)
        if not is_valid_blob_id(blob_id) or self.blob_manager.has_blob(blob_id):
            return False
        key = blob_key(blob_id)
        now = self.loop.time()
        last = self.requested_at.get(key)
        if last is not None and (now - last) < self.config.request_throttle:
            log.debug("already requested %s %.1fs ago", blob_id, now - last)
            return False
        self.requested_at[key] = now
        self.protocol.send_message(FetchRequest(blob_id), self.server_address)
        log.debug("requested %s from %s", blob_id, format_address(self.server_address))
        return True

    def note_waiting(self, blob_id: str, handle: typing.Hashable) -> bool:
        return self.waiting.add(normalize_blob_id(blob_id), handle)

    def note_seen(self, blob_id: str) -> bool:
        interval = self.config.seen_ping_interval
        blob_id = normalize_blob_id(blob_id)
        if not interval or not blob_id:
            return False
        key = blob_key(blob_id)
        now = self.loop.time()
        last = self.seen_pinged_at.get(key)
        if last is not None and (now - last) < interval:
            return False
        self.seen_pinged_at[key] = now
        self.protocol.send_message(SeenNotice(blob_id), self.server_address)
        return True

    async def download_blob(self, blob_id: str, timeout: typing.Optional[float] = None) -> str:
        """
        Fetch the photo (ignoring the throttle) and wait until it is on disk, returns the normalized id
        """
        blob_id = normalize_blob_id(blob_id)
        if not is_valid_blob_id(blob_id):
            raise InvalidBlobIdentifierError(blob_id)
        if self.blob_manager.has_blob(blob_id):
            return blob_id
        fut = self.loop.create_future()
        self._download_futs.setdefault(blob_key(blob_id), []).append(fut)
        self.requested_at.pop(blob_key(blob_id), None)
        try:
            self.request_if_missing(blob_id)
            await asyncio.wait_for(fut, timeout)
        finally:
            self._discard_future(self._download_futs, blob_id, fut)
        return blob_id

    async def upload_blob(self, blob_id: str, timeout: typing.Optional[float] = None) -> bool:
        """
        Push a locally stored photo to the server. Photos that are missing, empty or too large are
        skipped. With a timeout, waits for the server's acknowledgment and returns whether it was positive.
        """
        blob_id = normalize_blob_id(blob_id)
        if not self.blob_manager.has_blob(blob_id):
            log.warning("not uploading %s, it isn't stored locally", blob_id)
            return False
        length = self.blob_manager.get_blob(blob_id).get_length()
        if not length or length > MAX_BLOB_SIZE:
            log.warning("not uploading %s, bad size (%s bytes)", blob_id, length)
            return False
        blob_bytes = await self.blob_manager.read_blob(blob_id)
        fut = None
        if timeout is not None:
            fut = self.loop.create_future()
            self._upload_futs.setdefault(blob_key(blob_id), []).append(fut)
        try:
            sent = self.protocol.send_blob(blob_id, blob_bytes, self.server_address, is_upload=True)
            log.info("uploaded %s (%i bytes, %i chunks) to %s", blob_id, len(blob_bytes), sent,
                     format_address(self.server_address))
            if fut is None:
                return True
            return await asyncio.wait_for(fut, timeout)
        finally:
            if fut is not None:
                self._discard_future(self._upload_futs, blob_id, fut)

    @staticmethod
    def _discard_future(futs: typing.Dict[str, typing.List[asyncio.Future]], blob_id: str, fut: asyncio.Future):
        key = blob_key(blob_id)
        if fut in futs.get(key, ()):
            futs[key].remove(fut)
            if not futs[key]:
                del futs[key]

    @staticmethod
    def _resolve(futs: typing.Dict[str, typing.List[asyncio.Future]], blob_id: str,
                 result=None, exception: typing.Optional[Exception] = None):
        for fut in futs.pop(blob_key(blob_id), []):
            if fut.done():
                continue
            if exception is not None:
                fut.set_exception(exception)
            else:
                fut.set_result(result)

    def is_server(self, address: Address) -> bool:
        return tuple(address[:2]) == tuple(self.server_address)

    def handle_chunk(self, chunk: BlobChunk, address: Address) -> typing.Optional[asyncio.Task]:
        if chunk.is_upload:
            log.debug("ignoring upload chunk from %s", format_address(address))
            return None
        if not self.is_server(address):
            transfers_rejected_metric.labels(direction="download", reason="peer").inc()
            log.debug("ignoring chunk from %s, only %s may send photos", format_address(address),
                      format_address(self.server_address))
            return None
        blob_id = normalize_blob_id(chunk.blob_id)
        if not is_valid_blob_id(blob_id):
            return None
        chunks_received_metric.labels(direction="download").inc()
        try:
            assembled = self.tracker.receive_chunk(
                blob_key(blob_id), chunk.total_size, chunk.chunk_index, chunk.chunk_count, chunk.data
            )
        except InvalidChunkError as err:
            transfers_rejected_metric.labels(direction="download", reason="invalid_chunk").inc()
            log.debug("dropped chunk of %s from %s: %s", blob_id, format_address(address), err)
            return None
        except TransferLimitError as err:
            transfers_rejected_metric.labels(direction="download", reason="limit").inc()
            log.warning("dropped chunk of %s from %s: %s", blob_id, format_address(address), err)
            return None
        if assembled is None:
            return None
        return self._track(self._save_download(blob_id, assembled))

    async def _save_download(self, blob_id: str, blob_bytes: bytes):
        try:
            await self.blob_manager.save_blob(blob_id, blob_bytes)
        except (BlobError, OSError) as err:
            transfers_rejected_metric.labels(direction="download", reason=type(err).__name__).inc()
            log.warning("failed to store downloaded %s: %s", blob_id, err)
            self._resolve(self._download_futs, blob_id, exception=DownloadFailedError(blob_id, str(err)))
            return
        transfers_completed_metric.labels(direction="download").inc()
        log.info("downloaded %s (%i bytes)", blob_id, len(blob_bytes))
        self.on_blob_arrived(blob_id)

    def on_blob_arrived(self, blob_id: str):
        blob_id = normalize_blob_id(blob_id)
        for handle in self.waiting.pop(blob_id):
            if not self.notify_callback:
                continue
            try:
                self.notify_callback(handle, blob_id)
            except Exception:
                log.exception("error notifying %r that %s arrived", handle, blob_id)
        if self.blob_arrived_callback:
            try:
                self.blob_arrived_callback(blob_id)
            except Exception:
                log.exception("error in arrival callback for %s", blob_id)
        self._resolve(self._download_futs, blob_id, blob_id)

    def handle_ack(self, ack: BlobAck, address: Address):
        blob_id = normalize_blob_id(ack.blob_id)
        if not blob_id or not self.is_server(address):
            return
        if ack.ok:
            log.debug("%s acknowledged %s", format_address(address), blob_id)
            self._resolve(self._upload_futs, blob_id, True)
            return
        log.warning("%s failed %s: %s", format_address(address), blob_id, ack.error)
        self._resolve(self._upload_futs, blob_id, False)
        self._resolve(self._download_futs, blob_id, exception=DownloadFailedError(blob_id, ack.error))
