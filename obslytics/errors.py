"""Error kinds surfaced by an export.

Every error keeps its original cause via exception chaining; the caller
decides how to report it and which exit status to use.
"""


class ExportError(Exception):
    """Base class for all export failures."""
    kind = "export"


class StoreConnectionError(ExportError):
    """Dial or transport failure. The whole export may be retried."""
    kind = "connection"


class QueryTranslationError(ExportError):
    """A matcher or selector could not be turned into a store request."""
    kind = "query"


class RemoteAbortError(ExportError):
    """The store aborted the request rather than return a partial result."""
    kind = "remote_abort"


class DecodeError(ExportError):
    """Corrupt chunk, unsupported encoding or out-of-order samples."""
    kind = "decode"


class SinkError(ExportError):
    """The output sink failed to write or finalize."""
    kind = "sink"


class ExportCancelledError(ExportError):
    """The caller cancelled the export or its deadline passed."""
    kind = "cancelled"
