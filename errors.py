"""Error taxonomy shared by the store, the chat pipeline and the HTTP layer.

Every error carries a human-readable ``reason`` meant for the client and an
optional ``details`` string. Raw backend exception text belongs in the log,
not in ``reason``.
"""

from typing import Optional


class DocChatError(Exception):
    status_code = 500

    def __init__(self, reason: str, details: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details

    def to_dict(self):
        body = {"error": self.reason}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(DocChatError):
    status_code = 400


class ExtractionFailure(DocChatError):
    """The uploaded file could not be turned into text."""

    status_code = 422


class UnsupportedMediaType(ExtractionFailure):
    status_code = 415


class PayloadTooLarge(DocChatError):
    status_code = 413


class NotFound(DocChatError):
    status_code = 404


class StorageWriteFailure(DocChatError):
    status_code = 500


class StorageReadFailure(DocChatError):
    status_code = 502


class UpstreamFailure(DocChatError):
    """A chat turn could not be completed because a backend was unreachable."""

    status_code = 502


class ServiceNotConfigured(DocChatError):
    status_code = 503
