import asyncio
from photosync.testcase import AsyncioTestCase
from photosync.blob.assembly import ReassemblyTracker
from photosync.blob_exchange.janitor import TransferJanitor
from tests.mocks import get_time_accelerator


class TestTransferJanitor(AsyncioTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.advance = get_time_accelerator(self.loop)
        self.tracker = ReassemblyTracker(10, 0, self.loop.time)
        self.janitor = TransferJanitor(self.loop, self.tracker, 30.0, 120.0)

    def _start_transfer(self, key):
        self.tracker.receive_chunk(key, 20, 0, 2, b'x' * 10)

    async def test_clean_removes_only_stale(self):
        self._start_transfer('stale')
        now = self.loop.time()
        self._start_transfer('fresh')
        self.tracker.get('fresh').last_touched = now + 100
        self.assertEqual(self.janitor.clean(now + 121), 1)
        self.assertNotIn('stale', self.tracker)
        self.assertIn('fresh', self.tracker)

    async def test_maybe_clean_is_rate_limited(self):
        self.assertEqual(self.janitor.maybe_clean(), 0)
        self._start_transfer('a')
        now = self.loop.time()
        self.assertEqual(self.janitor.maybe_clean(now + 10), 0)
        self.assertEqual(self.janitor.maybe_clean(now + 125), 1)
        self._start_transfer('b')
        self.tracker.get('b').last_touched = now
        # within an interval of the last sweep nothing happens even though 'b' looks stale
        self.assertEqual(self.janitor.maybe_clean(now + 140), 0)
        self.assertIn('b', self.tracker)
        self.assertEqual(self.janitor.maybe_clean(now + 156), 1)
        self.assertEqual(len(self.tracker), 0)

    async def test_periodic_cleaning(self):
        await self.janitor.start()
        self.addAsyncCleanup(self.janitor.stop)
        self._start_transfer('stale')
        await self.advance(100)
        self._start_transfer('active')
        await self.advance(55)
        self.assertNotIn('stale', self.tracker)
        self.assertIn('active', self.tracker)

    async def test_stop(self):
        await self.janitor.start()
        task = self.janitor.task
        await self.janitor.stop()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(task.cancelled())
        self.assertFalse(self.janitor.running)
