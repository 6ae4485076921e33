import socket
import typing
import asyncio
import logging
import ipaddress
from prometheus_client import Counter
from photosync.error import MessageDecodeError, TransportNotConnectedError
from photosync.blob.assembly import get_chunk_count, split_blob
from photosync.blob_exchange.serialization import BlobMessage, BlobChunk, decode_message, MSG_SIZE_LIMIT

log = logging.getLogger(__name__)

Address = typing.Tuple[str, int]
MessageHandler = typing.Callable[[BlobMessage, Address], typing.Any]


chunks_received_metric = Counter(
    "chunks_received", "Number of photo chunks received", namespace="photosync",
    labelnames=("direction",),
)
transfers_completed_metric = Counter(
    "transfers_completed", "Number of photos received and written to disk", namespace="photosync",
    labelnames=("direction",),
)
transfers_rejected_metric = Counter(
    "transfers_rejected", "Number of chunks or assembled photos that were rejected", namespace="photosync",
    labelnames=("direction", "reason"),
)
transfers_pruned_metric = Counter(
    "transfers_pruned", "Number of idle partial uploads discarded", namespace="photosync",
)


def format_address(address: Address) -> str:
    return "%s:%i" % (address[0], address[1])


async def resolve_host(host: str, port: int) -> str:
    if host.lower() == 'localhost':
        return '127.0.0.1'
    try:
        if ipaddress.ip_address(host):
            return host
    except ValueError:
        pass
    loop = asyncio.get_running_loop()
    return (await loop.getaddrinfo(
        host, port,
        proto=socket.IPPROTO_UDP,
        type=socket.SOCK_DGRAM,
        family=socket.AF_INET
    ))[0][4][0]


class BlobExchangeProtocol(asyncio.DatagramProtocol):
    """
    One datagram is one message. Decoded messages are handed to the handler registered for their
    kind, kinds without a handler are dropped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.transport: typing.Optional[asyncio.DatagramTransport] = None
        self.handlers: typing.Dict[str, MessageHandler] = {}
        self.connected = asyncio.Event()

    def add_handler(self, kind: str, handler: MessageHandler):
        self.handlers[kind] = handler

    def connection_made(self, transport: asyncio.DatagramTransport):
        self.transport = transport
        self.connected.set()

    def connection_lost(self, exc: typing.Optional[Exception]):
        if exc:
            log.warning("photo exchange transport lost: %s", exc)
        self.transport = None
        self.connected.clear()

    def error_received(self, exc: Exception):
        log.debug("photo exchange socket error: %s", exc)

    def close(self):
        if self.transport:
            self.transport.close()
        self.transport = None
        self.connected.clear()

    def datagram_received(self, datagram: bytes, address: Address) -> None:  # pylint: disable=arguments-renamed
        try:
            message = decode_message(datagram)
        except MessageDecodeError as err:
            log.warning("couldn't decode datagram (%i bytes) from %s: %s", len(datagram),
                        format_address(address), err)
            return
        handler = self.handlers.get(message.kind)
        if handler is None:
            log.debug("no handler for '%s' from %s", message.kind, format_address(address))
            return
        handler(message, address)

    def send_message(self, message: BlobMessage, address: Address):
        if not self.transport or self.transport.is_closing():
            raise TransportNotConnectedError()
        data = message.encode()
        if len(data) > MSG_SIZE_LIMIT:
            log.warning("cannot send datagram larger than %i bytes (packet is %i bytes)",
                        MSG_SIZE_LIMIT, len(data))
            raise ValueError(
                f"cannot send datagram larger than {MSG_SIZE_LIMIT} bytes (packet is {len(data)} bytes)"
            )
        try:
            self.transport.sendto(data, address)
        except OSError as err:
            if err.errno == socket.EWOULDBLOCK:
                log.warning("Can't send data to %s: EWOULDBLOCK", format_address(address))
            else:
                log.error("socket error sending %i bytes to %s - %s (code %i)",
                          len(data), format_address(address), str(err), err.errno)
                raise err

    def send_blob(self, blob_id: str, blob_bytes: bytes, address: Address, is_upload: bool) -> int:
        """
        Send the whole photo as a run of chunk messages, returns the number of chunks sent
        """
        chunk_count = get_chunk_count(len(blob_bytes))
        for chunk_index, data in split_blob(blob_bytes):
            self.send_message(
                BlobChunk(blob_id, len(blob_bytes), chunk_index, chunk_count, data, is_upload), address
            )
        return chunk_count
