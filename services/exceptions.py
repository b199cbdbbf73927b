# Error taxonomy for the order pipeline
# Synchronous errors carry a short machine-checkable reason and an HTTP status;
# transient external errors are retried by the dispatch scheduler and never
# reach a caller.

from fastapi import status


class OrderPipelineError(Exception):
    """Base class for errors surfaced to API callers. Never changes state."""
    reason = "error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(OrderPipelineError):
    reason = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(OrderPipelineError):
    reason = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class StateConflictError(OrderPipelineError):
    reason = "invalid_state"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, current_status=None):
        super().__init__(detail)
        self.current_status = current_status


class NotFoundError(OrderPipelineError):
    reason = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class TransientExternalError(Exception):
    """An external dependency could not answer; the job must be retried."""


class ProofSourceError(TransientExternalError):
    pass


class EscrowError(TransientExternalError):
    pass


class SettlementRecordError(Exception):
    """The ledger settled but the order row could not be updated to match."""


class JobNotDue(Exception):
    """Raised by a processor delivered before its payload is due."""

    def __init__(self, retry_after_seconds: float):
        super().__init__(f"Job delivered {retry_after_seconds:.0f}s early")
        self.retry_after_seconds = retry_after_seconds
