from .base import BaseError


class ConfigurationError(BaseError):
    """
    Configuration errors.
    """


class ConfigReadError(ConfigurationError):
    """
    Can't open the config file user provided via command line args.
    """

    def __init__(self, path):
        self.path = path
        super().__init__(f"Cannot find provided configuration file '{path}'.")


class ConfigParseError(ConfigurationError):
    """
    Includes the syntax error / line number to help user fix it.
    """

    def __init__(self, path):
        self.path = path
        super().__init__(f"Failed to parse the configuration file '{path}'.")


class ConfigExtensionError(ConfigurationError):

    def __init__(self, path):
        self.path = path
        super().__init__(f"Configuration file '{path}' must be in YAML (.yml or .yaml).")


class BlobError(BaseError):
    """
    **Blobs**
    """


class InvalidBlobIdentifierError(BlobError):

    def __init__(self, blob_id):
        self.blob_id = blob_id
        super().__init__(f"Invalid blob identifier: '{blob_id}'")


class BlobNotFoundError(BlobError):

    def __init__(self, blob_id):
        self.blob_id = blob_id
        super().__init__("Photo not present on server")


class BlobEmptyError(BlobError):

    def __init__(self):
        super().__init__("Blob is empty.")


class BlobTooBigError(BlobError):

    def __init__(self, length):
        self.length = length
        super().__init__(f"Photo too large ({length} bytes)")


class InvalidBlobSignatureError(BlobError):
    """
    Assembled bytes don't start with the expected image signature.
    """

    def __init__(self):
        super().__init__("Invalid PNG")


class InvalidChunkError(BlobError):
    """
    Chunk metadata is outside of the protocol bounds.
    """

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Invalid chunk: {reason}")


class TransferLimitError(BlobError):

    def __init__(self, limit):
        self.limit = limit
        super().__init__(f"Already receiving {limit} photos.")


class DownloadFailedError(BlobError):
    """
    The serving peer answered a fetch with a negative acknowledgment.
    """

    def __init__(self, blob_id, reason):
        self.blob_id = blob_id
        self.reason = reason
        super().__init__(f"Failed to download '{blob_id}': {reason}")


class NetworkError(BaseError):
    """
    **Networking**
    """


class MessageDecodeError(NetworkError):

    def __init__(self, reason):
        self.reason = reason
        super().__init__(f"Could not decode message: {reason}")


class TransportNotConnectedError(NetworkError):

    def __init__(self):
        super().__init__("Transport is not connected.")
