# -*- coding: utf-8 -*-

"""
Defines all exceptions raised by condbalance.

Store errors describe what went wrong at the storage boundary. Operation
errors are what callers of :class:`~condbalance.balancer.Balancer` see:
they carry the operation name, participant id and session id as fields,
so that a request handler can branch on the kind of error and operators
can correlate log entries with user reports.
"""


class BalancerError(Exception):
    """
    Every exception of condbalance is derived from this class.
    """
    pass


class StoreError(BalancerError):
    """Non-retryable failure of the underlying store (IO, connectivity)."""
    pass


class StoreBusy(StoreError):
    """The store is temporarily locked by a concurrent transaction."""
    pass


class ConstraintViolation(StoreError):
    pass


class RetriesExhausted(StoreError):
    """
    Raised by :func:`~condbalance.concurrency.retry_on_busy` when the
    store stayed busy for every attempt.

    Args:
        attempts (int): Number of attempts that were made.
        last_error (StoreBusy): The error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: StoreBusy = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Store remained busy after {attempts} attempts: {last_error}")


class LockTimeout(BalancerError):
    pass


class OperationFailed(BalancerError):
    """
    Base class for errors surfaced by balancer operations.

    Args:
        operation (str): Name of the operation, e.g. 'assign'.
        participant_id (str): Participant the operation was run for.
        session_id (str): Session the operation was run in.
        condition_id (int): Condition involved, if already known.
        cause (Exception): The internal error that caused the failure.

    Attributes:
        client_error (bool): *True*, if the failure was caused by the
            request itself rather than by the server.
    """

    client_error = False

    def __init__(
        self,
        operation: str,
        participant_id: str,
        session_id: str,
        condition_id: int = None,
        cause: Exception = None,
    ):
        self.operation = operation
        self.participant_id = participant_id
        self.session_id = session_id
        self.condition_id = condition_id
        self.cause = cause
        super().__init__(self.describe())

    def describe(self) -> str:
        msg = (
            f"{self.operation} failed for participant {self.participant_id} "
            f"in session {self.session_id}"
        )
        if self.cause is not None:
            msg += f": {type(self.cause).__name__}: {self.cause}"
        return msg


class AssignmentFailed(OperationFailed):
    def __init__(self, participant_id: str, session_id: str, condition_id: int = None, cause: Exception = None):
        super().__init__("assign", participant_id, session_id, condition_id, cause)


class ConfirmationFailed(OperationFailed):
    def __init__(self, participant_id: str, session_id: str, condition_id: int = None, cause: Exception = None):
        super().__init__("confirm", participant_id, session_id, condition_id, cause)


class NotFound(ConfirmationFailed):
    client_error = True

    def describe(self) -> str:
        return f"Participant {self.participant_id} not found in session {self.session_id}"


class AlreadyCompleted(ConfirmationFailed):
    client_error = True

    def describe(self) -> str:
        return (
            f"Participant {self.participant_id} already completed condition "
            f"{self.condition_id} in session {self.session_id}"
        )
