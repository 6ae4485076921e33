import shutil
import tempfile
from photosync.conf import Config
from photosync.error import DownloadFailedError
from photosync.testcase import AsyncioTestCase
from photosync.blob.blob_manager import BlobManager
from photosync.blob_exchange.server import BlobExchangeServer
from photosync.blob_exchange.client import BlobExchangeClient
from tests.unit.blob_exchange.base import make_png


class BlobExchangeTestBase(AsyncioTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.client_dir = tempfile.mkdtemp()
        self.server_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.client_dir)
        self.addCleanup(shutil.rmtree, self.server_dir)
        self.server_config = Config(data_dir=self.server_dir)
        self.server_blob_manager = BlobManager(self.loop, self.server_config.photos_dir, self.server_config)
        self.server = BlobExchangeServer(self.loop, self.server_blob_manager, self.server_config)

        self.client_config = Config(data_dir=self.client_dir)
        self.client_blob_manager = BlobManager(self.loop, self.client_config.photos_dir, self.client_config)

        await self.client_blob_manager.setup()
        await self.server_blob_manager.setup()

        self.server.start_server(0, '127.0.0.1')
        self.addAsyncCleanup(self.server.stop_server)
        await self.server.started_listening.wait()
        server_address = self.server.protocol.transport.get_extra_info('sockname')[:2]

        self.arrived = []
        self.client = BlobExchangeClient(
            self.loop, self.client_blob_manager, self.client_config, server_address,
            blob_arrived_callback=self.arrived.append
        )
        await self.client.connect('127.0.0.1', 0)
        self.addCleanup(self.client.close)


class TestBlobExchange(BlobExchangeTestBase):

    async def test_transfer_photo(self):
        blob_bytes = make_png(60000)
        await self.server_blob_manager.save_blob('sunset', blob_bytes)
        self.assertEqual(await self.client.download_blob('Sunset', 5), 'Sunset.png')
        self.assertListEqual(self.arrived, ['Sunset.png'])
        self.assertEqual(await self.client_blob_manager.read_blob('sunset'), blob_bytes)

    async def test_upload_photo(self):
        blob_bytes = make_png(70000)
        await self.client_blob_manager.save_blob('selfie', blob_bytes)
        self.assertTrue(await self.client.upload_blob('selfie', timeout=5))
        self.assertEqual(await self.server_blob_manager.read_blob('selfie'), blob_bytes)

    async def test_round_trip_between_clients(self):
        blob_bytes = make_png(50000)
        await self.client_blob_manager.save_blob('big', blob_bytes)
        self.assertTrue(await self.client.upload_blob('big', timeout=5))

        other_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, other_dir)
        other_config = Config(data_dir=other_dir)
        other_blob_manager = BlobManager(self.loop, other_config.photos_dir, other_config)
        await other_blob_manager.setup()
        other = BlobExchangeClient(self.loop, other_blob_manager, other_config, self.client.server_address)
        await other.connect('127.0.0.1', 0)
        self.addCleanup(other.close)
        await other.download_blob('big', 5)
        self.assertEqual(await other_blob_manager.read_blob('big'), blob_bytes)

    async def test_missing_photo(self):
        with self.assertRaises(DownloadFailedError) as err:
            await self.client.download_blob('nothing', 5)
        self.assertEqual(str(err.exception), "Failed to download 'nothing.png': Photo not present on server")
