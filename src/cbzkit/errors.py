"""Exception taxonomy for the archive assembly engine.

Every failure surfaced by a decoder, a transform or the archive codec is one
of the classes below. The CLI maps each class to an exit code; library code
only raises.
"""


class CbzError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, *args, **kwargs):
        self.message = message
        super().__init__(message, *args, **kwargs)


class NoMatchError(CbzError):
    """Raised when an images glob matches zero files."""

    pass


class DecodeError(CbzError):
    """Raised when page bytes cannot be decoded as their declared format."""

    pass


class EmptyPayloadError(DecodeError):
    """Raised when a page carries a zero-length payload."""

    pass


class ImageProcessingError(CbzError):
    """Raised when a transform cannot obtain or re-encode a pixel buffer."""

    pass


class UnsupportedPdfFeatureError(CbzError):
    """Raised for encrypted / password protected PDF documents."""

    pass


class DrmProtectedError(CbzError):
    """Raised when an e-book container has its DRM flag set."""

    pass


class CorruptArchiveError(CbzError):
    """Raised when a zip index cannot be read."""

    pass


class EmptyPlanError(CbzError):
    """Raised when a merge plan has no entries."""

    def __init__(self, message: str = "merge plan is empty"):
        super().__init__(message)


class IoError(CbzError):
    """Raised when the destination archive cannot be written."""

    pass


class UnsupportedSourceError(CbzError):
    """Raised for unknown source kinds or containers that are not what they claim."""

    pass
