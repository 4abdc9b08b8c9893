"""Error taxonomy for the screening and extraction core.

Per-model failures (`ModelError` and subclasses, `InvalidModelOutputError`) are turned
into synthetic votes by the council and never reach the caller of a screening call.
Everything else propagates.
"""

from __future__ import annotations


class CouncilError(Exception):
    """Base exception for screening, extraction and model management failures."""


class ProviderUnavailableError(CouncilError):
    """The requested inference provider cannot serve the request.

    Raised when the local inference service is not connected, and for the cloud
    provider, which is not implemented.
    """


class ModelError(CouncilError):
    """A single model call failed."""

    def __init__(self, message: str, *, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class ModelUnreachableError(ModelError):
    """The inference service could not be reached."""


class ModelTimeoutError(ModelError):
    """No response from the inference service within the configured timeout."""


class InvalidModelOutputError(CouncilError):
    """No JSON object could be located in a model response, or it did not validate."""

    def __init__(self, message: str, *, raw_text: str | None = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class InsufficientContentError(CouncilError):
    """Article has neither an abstract nor full text."""


class InvalidCriteriaError(CouncilError):
    """One or more PICO criteria fields are blank."""


class DownloadError(CouncilError):
    """Base exception for model download failures."""

    def __init__(self, message: str, *, model_name: str) -> None:
        super().__init__(message)
        self.model_name = model_name


class DownloadFailedError(DownloadError):
    """The inference service reported an error or the transfer broke."""


class DownloadCancelledError(DownloadError):
    """The download was cancelled by `cancel_download`."""


class DownloadInProgressError(DownloadError):
    """A download for the same model name is already in flight."""
