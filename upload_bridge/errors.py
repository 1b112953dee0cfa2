"""
Bridge Errors

Every error raised by the bridge derives from BridgeError so callers can
tell bridge failures apart from library ones.
"""


class BridgeError(Exception):
    """Base class for upload bridge errors."""


class RegistryError(BridgeError):
    """Channel registry used before initialization or initialized twice."""


class BindError(BridgeError):
    """The HTTP listener could not bind its address."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"Cannot bind {address}: {reason}")
        self.address = address
        self.reason = reason


class ChannelClosed(BridgeError):
    """The notification channel was closed."""


class ChannelEmpty(BridgeError):
    """No message is buffered for the receiver."""


class ClientIpRejected(BridgeError):
    """The trusted client IP source carried no usable address."""


class UploadError(BridgeError):
    """Base class for per-request upload failures."""

    status_code = 500


class MissingFieldMetadata(UploadError):
    """A multipart field lacks its filename or content type."""

    status_code = 400

    def __init__(self, field_name: str, missing: str):
        super().__init__(f"Field '{field_name}' has no {missing}")
        self.field_name = field_name
        self.missing = missing


class InvalidFilename(UploadError):
    """The filename has no usable final path component."""

    status_code = 400


class UploadTooLarge(UploadError):
    """The request body exceeds the configured ceiling."""

    status_code = 413

    def __init__(self, limit: int):
        super().__init__(f"Upload exceeds {limit:,} bytes")
        self.limit = limit


class UploadWriteError(UploadError):
    """A received file could not be written to disk."""


class MalformedUpload(UploadError):
    """The body is not a complete multipart/form-data message."""

    status_code = 400


class ClientDisconnected(UploadError):
    """The client went away before the upload finished."""

    # nginx's "client closed request"; nobody is left to read it
    status_code = 499

    def __init__(self, message: str = "Client disconnected"):
        super().__init__(message)
