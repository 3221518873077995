"""Exception hierarchy for loglens.

Ingestion and query errors propagate to the caller. Alert rule errors are
logged by the dispatcher and never raised.
"""


class LoglensError(Exception):
    """Base class for all loglens errors."""


class ValidationError(LoglensError):
    """Malformed input event, pipeline descriptor or configuration."""


class InvalidRangeError(ValidationError):
    """A TimeRange whose end is not strictly after its start."""


class PipelineError(LoglensError):
    """A pipeline stage references an undefined field or is misused."""


class OperationTimeoutError(LoglensError, TimeoutError):
    """A caller-supplied deadline was exceeded."""


class QueryCancelledError(LoglensError):
    """A query was cancelled through its CancellationToken."""


class OutOfOrderBucketError(ValidationError):
    """A bucket was fed to a detector series out of chronological order."""


class TransientStorageError(LoglensError):
    """A storage failure that may succeed when retried.

    Only the ingestion boundary retries these; every other caller sees them.
    """
