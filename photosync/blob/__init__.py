# chunk size and limits are the wire contract, both peers must agree on them
CHUNK_SIZE = 24 * 1024
MAX_BLOB_SIZE = 2 * 2 ** 20
MAX_CHUNK_COUNT = 4096

BLOB_SUFFIX = '.png'
PNG_SIGNATURE = b'\x89PNG'
MIN_BLOB_SIZE = 8
