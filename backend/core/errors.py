"""Failure taxonomy for the upload relay.

Each error carries the HTTP status it maps to and a short message that is
safe to hand to a browser. Anything more detailed goes to the log.
"""


class UploadError(Exception):
    status_code = 500
    public_message = "Upload failed"

    def __init__(self, detail: str | None = None, public_message: str | None = None):
        super().__init__(detail or public_message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class InvalidUpload(UploadError):
    status_code = 400
    public_message = "Invalid upload request"


class FileTooLarge(UploadError):
    status_code = 400
    public_message = "File too large"


class UploadNotFound(UploadError):
    status_code = 404
    public_message = "Upload not found"


class UploadCancelled(UploadError):
    status_code = 400
    public_message = "Upload cancelled by user"


class RemoteProtocolError(UploadError):
    """Shopify or blob storage answered with something unusable."""
    status_code = 500


class PollTimeout(UploadError):
    status_code = 500
    public_message = "The file was not ready in the allotted time"


class TransformFailed(UploadError):
    """Local recompress/transcode failed; callers fall back to the original bytes."""
