"""Exception taxonomy for the model lifecycle."""

from __future__ import annotations


class QuillError(Exception):
    """Base exception for all quill-local errors."""


# -- Precondition errors: wrong call at the wrong time, status untouched ----


class UnknownModelError(QuillError, LookupError):
    """Raised when a model id is not in the registry."""


class AlreadyDownloadingError(QuillError):
    """Raised when a download is requested while one is already active."""


class AlreadyLoadingError(QuillError):
    """Raised when a load is requested while one is already active."""


class ModelNotDownloadedError(QuillError):
    """Raised when loading a model whose file is not on disk."""


# -- Transfer / load failures: status moves to ``error`` --------------------


class DownloadFailedError(QuillError):
    """Raised when the transport fails to fetch a model artifact."""


class IncompleteDownloadError(DownloadFailedError):
    """Raised when a transfer reports success but the file is short or missing."""


class LoadFailedError(QuillError):
    """Raised when a model cannot be loaded, after any CPU fallback."""


# -- Cancellation: not an error state ---------------------------------------


class DownloadCancelledError(QuillError):
    """Raised by the download coordinator when its cancel token fires."""


class InferenceCancelledError(QuillError):
    """Raised by an engine binding when a completion observes its cancel token."""
