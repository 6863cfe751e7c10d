"""Error taxonomy for the preview pipeline.

Every error carries the HTTP status the request handler maps it to. Errors raised on the
background upload path are never mapped; they are logged where they are caught.
"""


class PreviewError(Exception):
    status_code = 500


class InputValidationError(PreviewError):
    """Missing or malformed address, or a malformed trusted-caller payload."""

    status_code = 400


class AuthError(PreviewError):
    status_code = 401


class MethodNotSupportedError(PreviewError):
    status_code = 405


class PayloadTooLargeError(PreviewError):
    status_code = 413


class UpstreamFetchError(PreviewError):
    """Raised when the badge provider or a remote image cannot be fetched."""


class FetchError(UpstreamFetchError):
    """Raised when a single badge image fetch fails or returns a non-success status."""


class DecodeError(PreviewError):
    """Raised when image metadata (width/height) cannot be determined."""


class RenderError(PreviewError):
    pass


class UploadError(PreviewError):
    """Raised when the image CDN rejects an upload."""


class CacheWriteError(PreviewError):
    pass
