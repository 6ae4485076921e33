import typing
import logging
import msgpack
from photosync.error import MessageDecodeError

log = logging.getLogger(__name__)

# a full chunk message is a little over 24KB, keep well under the udp datagram limit
MSG_SIZE_LIMIT = 60000


class BlobMessage:
    """
    Messages go over the wire as a msgpack array: [kind, *fields]
    """
    kind = ''
    fields: typing.Tuple[str, ...] = ()
    field_types: typing.Tuple[typing.Type, ...] = ()

    def to_list(self) -> typing.List:
        return [self.kind] + [getattr(self, field) for field in self.fields]

    def to_dict(self) -> typing.Dict:
        return {field: getattr(self, field) for field in self.fields}

    def encode(self) -> bytes:
        return msgpack.packb(self.to_list(), use_bin_type=True)

    @classmethod
    def from_list(cls, values: typing.List) -> 'BlobMessage':
        if len(values) != len(cls.fields):
            raise MessageDecodeError(f"'{cls.kind}' expects {len(cls.fields)} fields, got {len(values)}")
        for field, field_type, value in zip(cls.fields, cls.field_types, values):
            # bool is an int subclass, don't let true/false stand in for a size or index
            if not isinstance(value, field_type) or (field_type is int and isinstance(value, bool)):
                raise MessageDecodeError(f"'{cls.kind}' field '{field}' has the wrong type")
        return cls(**dict(zip(cls.fields, values)))

    def __eq__(self, other):
        return type(self) is type(other) and self.to_list() == other.to_list()

    def __repr__(self):
        return f"{self.__class__.__name__}({self.to_dict()!r})"


class FetchRequest(BlobMessage):
    kind = 'fetch'
    fields = ('blob_id',)
    field_types = (str,)

    def __init__(self, blob_id: str) -> None:
        self.blob_id = blob_id


class BlobChunk(BlobMessage):
    kind = 'chunk'
    fields = ('blob_id', 'total_size', 'chunk_index', 'chunk_count', 'data', 'is_upload')
    field_types = (str, int, int, int, bytes, bool)

    def __init__(self, blob_id: str, total_size: int, chunk_index: int, chunk_count: int, data: bytes,
                 is_upload: bool) -> None:
        self.blob_id = blob_id
        self.total_size = total_size
        self.chunk_index = chunk_index
        self.chunk_count = chunk_count
        self.data = data
        self.is_upload = is_upload

    def __repr__(self):
        return f"{self.__class__.__name__}(blob_id={self.blob_id!r}, chunk={self.chunk_index}/{self.chunk_count}, " \
            f"total_size={self.total_size}, is_upload={self.is_upload})"


class BlobAck(BlobMessage):
    kind = 'ack'
    fields = ('blob_id', 'ok', 'error')
    field_types = (str, bool, str)

    def __init__(self, blob_id: str, ok: bool, error: str = '') -> None:
        self.blob_id = blob_id
        self.ok = ok
        self.error = error


class SeenNotice(BlobMessage):
    kind = 'seen'
    fields = ('blob_id',)
    field_types = (str,)

    def __init__(self, blob_id: str) -> None:
        self.blob_id = blob_id


MESSAGE_TYPES: typing.Dict[str, typing.Type[BlobMessage]] = {
    message_type.kind: message_type for message_type in (FetchRequest, BlobChunk, BlobAck, SeenNotice)
}


def decode_message(datagram: bytes) -> BlobMessage:
    try:
        decoded = msgpack.unpackb(datagram, raw=False)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as err:
        raise MessageDecodeError(str(err)) from err
    if not isinstance(decoded, list) or not decoded:
        raise MessageDecodeError("not a message array")
    message_type = MESSAGE_TYPES.get(decoded[0]) if isinstance(decoded[0], str) else None
    if message_type is None:
        raise MessageDecodeError(f"unknown message kind {decoded[0]!r}")
    return message_type.from_list(decoded[1:])
