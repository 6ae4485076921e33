import typing
import asyncio
import logging
from photosync.error import BaseError, BlobError, BlobNotFoundError, InvalidChunkError, TransferLimitError
from photosync.blob import CHUNK_SIZE
from photosync.blob.assembly import ReassemblyTracker
from photosync.blob.blob_file import normalize_blob_id, blob_key, is_valid_blob_id
from photosync.blob_exchange.serialization import FetchRequest, BlobChunk, BlobAck, SeenNotice
from photosync.blob_exchange.protocol import (
    Address, BlobExchangeProtocol, format_address,
    chunks_received_metric, transfers_completed_metric, transfers_rejected_metric,
)
from photosync.blob_exchange.janitor import TransferJanitor

if typing.TYPE_CHECKING:
    from photosync.conf import Config
    from photosync.blob.blob_manager import BlobManager

log = logging.getLogger(__name__)

UploadKey = typing.Tuple[str, str]


class BlobExchangeServer:
    """
    Serving side: answers fetch requests with a chunk stream and reassembles uploads,
    keyed by (uploading peer, photo) so uploads from different peers never mix.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, blob_manager: 'BlobManager', config: 'Config',
                 touch_callback: typing.Optional[typing.Callable[[str], None]] = None):
        self.loop = loop
        self.blob_manager = blob_manager
        self.config = config
        self.touch_callback = touch_callback
        self.tracker = ReassemblyTracker(CHUNK_SIZE, config.max_incoming_transfers, loop.time)
        self.janitor = TransferJanitor(loop, self.tracker, config.prune_interval, config.upload_stale_timeout)
        self.protocol = BlobExchangeProtocol(loop)
        self.protocol.add_handler(FetchRequest.kind, self.handle_fetch_request)
        self.protocol.add_handler(BlobChunk.kind, self.handle_chunk)
        self.protocol.add_handler(SeenNotice.kind, self.handle_seen)
        self.server_task: typing.Optional[asyncio.Task] = None
        self.started_listening = asyncio.Event()
        self.pending: typing.Set[asyncio.Task] = set()

    def start_server(self, port: int, interface: typing.Optional[str] = '0.0.0.0'):
        if self.server_task is not None:
            raise Exception("already running")

        async def _start_server():
            await self.loop.create_datagram_endpoint(lambda: self.protocol, local_addr=(interface, port))
            await self.janitor.start()
            self.started_listening.set()
            log.info("Photo server listening on UDP %s:%i", interface, port)

        self.server_task = self.loop.create_task(_start_server())

    async def stop_server(self):
        if self.server_task:
            if not self.server_task.done():
                self.server_task.cancel()
            self.server_task = None
        await self.janitor.stop()
        pending = list(self.pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.protocol.close()
        self.tracker.clear()
        self.started_listening.clear()
        log.info("Stopped photo server")

    def _track(self, coro) -> asyncio.Task:
        task = self.loop.create_task(coro)
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return task

    def touch(self, blob_id: str):
        if self.touch_callback:
            self.touch_callback(normalize_blob_id(blob_id))

    def send_ack(self, blob_id: str, address: Address, ok: bool, error: str = ''):
        if not ok:
            log.warning("sending failure for %s to %s: %s", blob_id, format_address(address), error)
        try:
            self.protocol.send_message(BlobAck(blob_id, ok, error), address)
        except (BaseError, OSError, ValueError) as err:
            log.warning("couldn't acknowledge %s to %s: %s", blob_id, format_address(address), err)

    def handle_fetch_request(self, request: FetchRequest, address: Address) -> typing.Optional[asyncio.Task]:
        blob_id = normalize_blob_id(request.blob_id)
        if not blob_id:
            return None
        return self._track(self._send_blob(blob_id, address))

    async def _send_blob(self, blob_id: str, address: Address):
        if not self.blob_manager.has_blob(blob_id):
            return self.send_ack(blob_id, address, False, str(BlobNotFoundError(blob_id)))
        self.touch(blob_id)
        try:
            blob_bytes = await self.blob_manager.read_blob(blob_id)
        except (BlobError, OSError) as err:
            return self.send_ack(blob_id, address, False, str(err))
        try:
            sent = self.protocol.send_blob(blob_id, blob_bytes, address, is_upload=False)
        except (BaseError, OSError, ValueError) as err:
            log.warning("failed to send %s to %s: %s", blob_id, format_address(address), err)
            return None
        log.info("sent %s (%i bytes, %i chunks) to %s", blob_id, len(blob_bytes), sent, format_address(address))

    def handle_chunk(self, chunk: BlobChunk, address: Address) -> typing.Optional[asyncio.Task]:
        if not chunk.is_upload:
            log.debug("ignoring download chunk from %s", format_address(address))
            return None
        self.janitor.maybe_clean()
        blob_id = normalize_blob_id(chunk.blob_id)
        if not is_valid_blob_id(blob_id):
            return None
        chunks_received_metric.labels(direction="upload").inc()
        key: UploadKey = (format_address(address), blob_key(blob_id))
        try:
            assembled = self.tracker.receive_chunk(
                key, chunk.total_size, chunk.chunk_index, chunk.chunk_count, chunk.data
            )
        except InvalidChunkError as err:
            transfers_rejected_metric.labels(direction="upload", reason="invalid_chunk").inc()
            log.debug("dropped chunk of %s from %s: %s", blob_id, format_address(address), err)
            return None
        except TransferLimitError as err:
            transfers_rejected_metric.labels(direction="upload", reason="limit").inc()
            log.warning("dropped chunk of %s from %s: %s", blob_id, format_address(address), err)
            return None
        if assembled is None:
            return None
        return self._track(self._save_upload(blob_id, assembled, address))

    async def _save_upload(self, blob_id: str, blob_bytes: bytes, address: Address):
        try:
            await self.blob_manager.save_blob(blob_id, blob_bytes)
        except (BlobError, OSError) as err:
            transfers_rejected_metric.labels(direction="upload", reason=type(err).__name__).inc()
            return self.send_ack(blob_id, address, False, str(err))
        transfers_completed_metric.labels(direction="upload").inc()
        log.info("received %s (%i bytes) from %s", blob_id, len(blob_bytes), format_address(address))
        self.touch(blob_id)
        self.send_ack(blob_id, address, True)

    def handle_seen(self, notice: SeenNotice, address: Address):
        blob_id = normalize_blob_id(notice.blob_id)
        if blob_id:
            self.touch(blob_id)
