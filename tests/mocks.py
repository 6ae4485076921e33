import typing
import contextlib
import functools
import asyncio
if typing.TYPE_CHECKING:
    from photosync.blob_exchange.protocol import BlobExchangeProtocol

Address = typing.Tuple[str, int]


def get_time_accelerator(loop: asyncio.AbstractEventLoop,
                         instant_step: bool = False) -> typing.Callable[[float], typing.Awaitable[None]]:
    """
    Returns an async advance() function

    This provides a way to advance() the BaseEventLoop.time for the scheduled TimerHandles
    made by call_later, call_at, and call_soon.
    """

    original = loop.time
    _drift = 0
    loop.time = functools.wraps(loop.time)(lambda: original() + _drift)

    async def accelerate_time(seconds: float) -> None:
        nonlocal _drift
        if seconds < 0:
            raise ValueError(f'Cannot go back in time ({seconds} seconds)')
        _drift += seconds
        await asyncio.sleep(0)

    async def accelerator(seconds: float):
        steps = seconds * 10.0 if not instant_step else 1

        for _ in range(max(int(steps), 1)):
            await accelerate_time(seconds/steps)

    return accelerator


class MockDatagramTransport(asyncio.DatagramTransport):
    def __init__(self, loop: asyncio.AbstractEventLoop, network: typing.Dict[Address, 'BlobExchangeProtocol'],
                 address: Address, sent: typing.List[typing.Tuple[bytes, Address]]):
        super().__init__(extra={'sockname': address})
        self.loop = loop
        self.network = network
        self.address = address
        self.sent = sent
        self._closing = False

    def is_closing(self):
        return self._closing

    def close(self):
        self._closing = True
        if self.network.get(self.address) is not None:
            del self.network[self.address]

    def sendto(self, data, addr=None):
        self.sent.append((data, addr))
        rx = self.network.get(addr)
        if rx is not None:
            self.loop.call_soon(rx.datagram_received, data, self.address)


@contextlib.contextmanager
def mock_network_loop(loop: asyncio.AbstractEventLoop,
                      network: typing.Optional[typing.Dict[Address, 'BlobExchangeProtocol']] = None,
                      sent: typing.Optional[typing.List[typing.Tuple[bytes, Address]]] = None):
    """
    Replace loop.create_datagram_endpoint with an in memory network, datagrams sent to a bound
    address are delivered on the next loop iteration and every datagram sent is appended to `sent`
    """
    network = network if network is not None else {}
    sent = sent if sent is not None else []
    original = loop.create_datagram_endpoint

    async def create_datagram_endpoint(proto_lam: typing.Callable[[], 'BlobExchangeProtocol'],
                                       local_addr: Address = None, **kwargs):
        protocol = proto_lam()
        transport = MockDatagramTransport(loop, network, local_addr, sent)
        protocol.connection_made(transport)
        network[local_addr] = protocol
        return transport, protocol

    loop.create_datagram_endpoint = create_datagram_endpoint
    try:
        yield network
    finally:
        loop.create_datagram_endpoint = original
