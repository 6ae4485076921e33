import os
import typing
import asyncio
import logging
from photosync.error import BlobNotFoundError, InvalidBlobIdentifierError
from photosync.blob.blob_file import (
    BlobFile,
    blob_key,
    is_valid_blob_id,
    get_blob_path,
    check_blob_length,
)

if typing.TYPE_CHECKING:
    from photosync.conf import Config

log = logging.getLogger(__name__)


class BlobManager:
    def __init__(self, loop: asyncio.AbstractEventLoop, blob_dir: str, config: 'Config'):
        """
        This class stores photos on the hard disk, one file per normalized photo id

        blob_dir - directory where photos are stored
        """
        self.loop = loop
        self.blob_dir = blob_dir
        self.config = config
        self.completed_blob_ids: typing.Set[str] = set()
        self.blobs: typing.Dict[str, BlobFile] = {}

    def list_blobs(self) -> typing.Set[str]:
        if not os.path.isdir(self.blob_dir):
            return set()
        blobfiles = set()
        with os.scandir(self.blob_dir) as entries:
            for item in entries:
                if item.is_file() and is_valid_blob_id(item.name) and blob_key(item.name) == item.name:
                    blobfiles.add(item.name)
        return blobfiles

    async def setup(self) -> bool:
        os.makedirs(self.blob_dir, exist_ok=True)
        in_blobfiles_dir = await self.loop.run_in_executor(None, self.list_blobs)
        self.completed_blob_ids.update(in_blobfiles_dir)
        log.info("%i photos in %s", len(in_blobfiles_dir), self.blob_dir)
        return True

    def stop(self):
        self.blobs.clear()
        self.completed_blob_ids.clear()

    def get_blob_path(self, blob_id: str) -> str:
        return get_blob_path(self.blob_dir, blob_id)

    def get_blob(self, blob_id: str) -> BlobFile:
        key = blob_key(blob_id)
        if key not in self.blobs:
            self.blobs[key] = BlobFile(self.loop, blob_id, self.blob_dir, self.blob_completed)
        return self.blobs[key]

    def has_blob(self, blob_id: str) -> bool:
        """
        Checks the disk rather than trusting the index alone, photos may be removed by
        cache clearing that happens outside of this manager.
        """
        if not is_valid_blob_id(blob_id):
            return False
        key = blob_key(blob_id)
        if os.path.isfile(self.get_blob_path(blob_id)):
            self.completed_blob_ids.add(key)
            return True
        self.completed_blob_ids.discard(key)
        self.blobs.pop(key, None)
        return False

    def blob_completed(self, blob: BlobFile):
        key = blob_key(blob.blob_id)
        if key not in self.completed_blob_ids:
            self.completed_blob_ids.add(key)

    async def read_blob(self, blob_id: str) -> bytes:
        if not is_valid_blob_id(blob_id):
            raise InvalidBlobIdentifierError(blob_id)
        if not self.has_blob(blob_id):
            raise BlobNotFoundError(blob_id)
        blob_bytes = await self.get_blob(blob_id).read_blob()
        check_blob_length(len(blob_bytes))
        return blob_bytes

    async def save_blob(self, blob_id: str, blob_bytes: bytes) -> BlobFile:
        if not is_valid_blob_id(blob_id):
            raise InvalidBlobIdentifierError(blob_id)
        blob = self.get_blob(blob_id)
        await blob.save_verified_blob(blob_bytes)
        return blob
