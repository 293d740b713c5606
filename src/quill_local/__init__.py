"""quill-local: on-device text prediction with a managed model lifecycle."""

__version__ = "0.1.0"
