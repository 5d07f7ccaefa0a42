"""
Exceptions raised inside the QA pipeline.

SDK errors are not wrapped; they are classified directly by
backend.errors.classifier.
"""


class QAError(Exception):
    """Base class for pipeline errors."""


class QAValidationError(QAError, ValueError):
    """Caller-side input violation, raised before any network call."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid question request: " + "; ".join(self.errors))


class StreamTimeoutError(QAError):
    """The streaming deadline elapsed before the upstream finished."""

    def __init__(self, timeout_ms: int, formatted: str = ""):
        self.timeout_ms = timeout_ms
        super().__init__(f"Request timeout after {formatted or f'{timeout_ms}ms'}")


class ClientDisconnectedError(QAError):
    """The client closed the event stream."""

    def __init__(self):
        super().__init__("Client disconnected from stream")


class CompletionResponseError(QAError):
    """The completion payload could not be used."""
