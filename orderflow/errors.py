"""
Error taxonomy shared by the API, the state machine, the ledger and the worker.

`retryable` tells the job pipeline whether a failed attempt should be re-run;
`code` is the stable identifier returned to HTTP callers.
"""


class OrderflowError(Exception):
    code = "orderflow_error"
    retryable = False

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class NotFound(OrderflowError):
    """Entity is missing or belongs to another organization."""

    code = "not_found"


class AlreadyExists(OrderflowError):
    code = "already_exists"


class InvalidTransition(OrderflowError):
    code = "invalid_transition"

    def __init__(self, current: str | None, target: str, message: str = ""):
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid state transition from {current} to {target}")


class InsufficientStock(OrderflowError):
    code = "insufficient_stock"

    def __init__(self, sku_code: str, available: int, requested: int):
        self.sku_code = sku_code
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for SKU {sku_code}. Available: {available}, Required: {requested}"
        )


class NegativeInventory(OrderflowError):
    code = "negative_inventory"


class AuthenticationFailed(OrderflowError):
    code = "authentication_failed"


class MalformedPayload(OrderflowError):
    code = "malformed_payload"


class UnknownSku(MalformedPayload):
    code = "unknown_sku"

    def __init__(self, sku_code: str):
        self.sku_code = sku_code
        super().__init__(f"SKU not found: {sku_code}. SKUs must exist before orders referencing them are imported.")


class DuplicateJob(OrderflowError):
    """A processed-job record already exists; the job's effects are committed."""

    code = "duplicate_job"

    def __init__(self, job_id: str, result: dict | None = None):
        self.job_id = job_id
        self.result = result
        super().__init__(f"Job {job_id} already processed")


class IntegrationFailure(OrderflowError):
    code = "integration_failure"

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RetryableIntegrationFailure(IntegrationFailure):
    code = "integration_unavailable"
    retryable = True


class TerminalIntegrationFailure(IntegrationFailure):
    code = "integration_rejected"
