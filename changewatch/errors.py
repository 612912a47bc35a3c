"""
Exception taxonomy for the pipeline.

Transient errors are retried (bounded by the watch failure ceiling or the
delivery attempt limit). Data errors skip the offending record. Configuration
errors put the watch into ``error`` straight away. Invariant violations mean
a second writer lost a race and must back off.
"""


class ChangewatchError(Exception):
    """Base class for all pipeline errors."""


class TransientError(ChangewatchError):
    pass


class ExtractionError(TransientError):
    """The extraction worker reported an error or could not be reached."""


class ExtractionTimeout(ExtractionError):
    pass


class TransportError(TransientError):
    """The channel transport did not accept a notification."""


class DataError(ChangewatchError):
    """A record could not be used (malformed or without identity)."""


class ConfigurationError(ChangewatchError):
    """Invalid schedule, missing blueprint, bad filter or channel config."""


class InvariantViolation(ChangewatchError):
    pass


class RunAlreadyActive(InvariantViolation):
    def __init__(self, watch_id: str):
        super().__init__(f"watch {watch_id} already has a running run")
        self.watch_id = watch_id


class NotFoundError(ChangewatchError):
    pass


class WatchNotSchedulable(ChangewatchError):
    """The watch is paused, in error or deleted and cannot start a run."""

    def __init__(self, watch_id: str, status: str):
        super().__init__(f"watch {watch_id} is {status}")
        self.watch_id = watch_id
        self.status = status
