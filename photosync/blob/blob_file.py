import os
import time
import tempfile
import asyncio
import logging
import typing

from photosync.error import (
    InvalidBlobIdentifierError, BlobEmptyError, BlobTooBigError, InvalidBlobSignatureError
)
from photosync.blob import BLOB_SUFFIX, MAX_BLOB_SIZE, MIN_BLOB_SIZE, PNG_SIGNATURE

log = logging.getLogger(__name__)


def normalize_blob_id(blob_id: typing.Optional[str]) -> str:
    """
    Trim the name and append the canonical suffix if it is missing (case-insensitively).
    Blank input normalizes to '', which every caller treats as "no blob".
    """
    if not blob_id or not blob_id.strip():
        return ''
    blob_id = blob_id.strip()
    if not blob_id.lower().endswith(BLOB_SUFFIX):
        blob_id += BLOB_SUFFIX
    return blob_id


def blob_key(blob_id: typing.Optional[str]) -> str:
    """Case-insensitive key for a blob, used for in-memory indexes and file names."""
    return normalize_blob_id(blob_id).lower()


def is_valid_blob_id(blob_id: str) -> bool:
    key = blob_key(blob_id)
    if not key or key == BLOB_SUFFIX:
        return False
    if '/' in key or '\\' in key or '\x00' in key:
        return False
    return not key.startswith('.')


def get_blob_path(blob_directory: str, blob_id: str) -> str:
    if not is_valid_blob_id(blob_id):
        raise InvalidBlobIdentifierError(blob_id)
    return os.path.join(blob_directory, blob_key(blob_id))


def has_valid_signature(blob_bytes: bytes) -> bool:
    return len(blob_bytes) >= MIN_BLOB_SIZE and blob_bytes[:len(PNG_SIGNATURE)] == PNG_SIGNATURE


def check_blob_length(length: int):
    if length <= 0:
        raise BlobEmptyError()
    if length > MAX_BLOB_SIZE:
        raise BlobTooBigError(length)


def verify_blob_bytes(blob_bytes: bytes):
    check_blob_length(len(blob_bytes))
    if not has_valid_signature(blob_bytes):
        raise InvalidBlobSignatureError()


class BlobFile:
    """
    A photo existing (or about to exist) on the local file system

    Writes are whole-file: bytes go to a temporary file next to the target which is then
    moved over it, so readers never observe a partially written photo.
    """
    __slots__ = [
        'loop',
        'blob_id',
        'blob_directory',
        'file_path',
        'blob_completed_callback',
        'verified',
        'added_on',
    ]

    def __init__(self, loop: asyncio.AbstractEventLoop, blob_id: str, blob_directory: str,
                 blob_completed_callback: typing.Optional[typing.Callable[['BlobFile'], None]] = None,
                 added_on: typing.Optional[float] = None):
        self.loop = loop
        self.blob_id = normalize_blob_id(blob_id)
        self.blob_directory = blob_directory
        self.file_path = get_blob_path(blob_directory, blob_id)
        self.blob_completed_callback = blob_completed_callback
        self.verified = asyncio.Event()
        self.added_on = added_on or time.time()
        if self.file_exists:
            self.verified.set()

    def __repr__(self):
        return f"{self.__class__.__name__}({self.blob_id!r})"

    @property
    def file_exists(self) -> bool:
        return os.path.isfile(self.file_path)

    def get_is_verified(self) -> bool:
        return self.verified.is_set()

    def get_length(self) -> typing.Optional[int]:
        if not self.file_exists:
            return None
        return os.stat(self.file_path).st_size

    def _read_blob(self) -> bytes:
        with open(self.file_path, 'rb') as handle:
            return handle.read()

    async def read_blob(self) -> bytes:
        return await self.loop.run_in_executor(None, self._read_blob)

    def _write_blob(self, blob_bytes: bytes):
        os.makedirs(self.blob_directory, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(dir=self.blob_directory, prefix='.', suffix='.tmp', delete=False)
        tmp_path = handle.name
        try:
            with handle:
                handle.write(blob_bytes)
            os.replace(tmp_path, self.file_path)
        finally:
            if os.path.isfile(tmp_path):
                os.remove(tmp_path)

    async def save_verified_blob(self, blob_bytes: bytes):
        """
        Validate and persist the photo. Raises a BlobError subclass for bad content and OSError on io failure,
        in both cases nothing is written.
        """
        verify_blob_bytes(blob_bytes)
        await self.loop.run_in_executor(None, self._write_blob, blob_bytes)
        self.added_on = time.time()
        self.verified.set()
        if self.blob_completed_callback:
            self.blob_completed_callback(self)
