import typing
import asyncio
import logging
from photosync.blob_exchange.protocol import transfers_pruned_metric

if typing.TYPE_CHECKING:
    from photosync.blob.assembly import ReassemblyTracker

log = logging.getLogger(__name__)


class TransferJanitor:

    def __init__(self, loop: asyncio.AbstractEventLoop, tracker: 'ReassemblyTracker',
                 cleaning_interval: float = 30.0, stale_timeout: float = 120.0):
        self.loop = loop
        self.tracker = tracker
        self.cleaning_interval = cleaning_interval
        self.stale_timeout = stale_timeout
        self.running = False
        self.task: typing.Optional[asyncio.Task] = None
        self._last_clean: typing.Optional[float] = None

    def clean(self, now: typing.Optional[float] = None) -> int:
        now = now if now is not None else self.loop.time()
        self._last_clean = now
        removed = self.tracker.prune(self.stale_timeout, now)
        if removed:
            transfers_pruned_metric.inc(len(removed))
            log.info("discarded %i abandoned uploads", len(removed))
            log.debug("discarded uploads: %s", removed)
        return len(removed)

    def maybe_clean(self, now: typing.Optional[float] = None) -> int:
        """Clean unless nothing is in flight or the last sweep was less than an interval ago."""
        if not len(self.tracker):
            return 0
        now = now if now is not None else self.loop.time()
        if self._last_clean is not None and (now - self._last_clean) < self.cleaning_interval:
            return 0
        return self.clean(now)

    async def cleaning_loop(self):
        while self.running:
            await asyncio.sleep(self.cleaning_interval)
            if len(self.tracker):
                self.clean()

    async def start(self):
        self.running = True
        self.task = self.loop.create_task(self.cleaning_loop())
        self.task.add_done_callback(lambda _: log.debug("Stopping upload cleanup service."))

    async def stop(self):
        if self.running:
            self.running = False
            self.task.cancel()
            self.task = None
