"""Error taxonomy for transfer and payout jobs.

Jobs never let a single row's error escape the loop; they record it and use
``is_retryable`` to decide whether the row stays eligible for the next run.
Anything that is not one of these types is treated as transient.
"""


class SettlementError(RuntimeError):
    retryable = True


class ConfigurationError(SettlementError):
    """Missing secret, destination account or payment reference. Needs a human."""

    retryable = False


class SettlementValidationError(SettlementError):
    """Bad amount or currency on the row itself. Points at an upstream data problem."""

    retryable = False


class ProcessorError(SettlementError):
    def __init__(self, message: str, code: str | None = None, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))
