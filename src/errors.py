"""Error taxonomy for the driver.

Every error carries a short code and a human-readable message, so the CLI
can report failures uniformly:

- E3xx: placement and workflow state (storage/pool exhausted, VM never stopped)
- E4xx: business failures reported by a task, transfer failures
- E5xx: transport and response failures
- E6xx: workflow input and polling control
"""

import json
from typing import Optional


class DriverError(Exception):
    """Base exception for driver errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TransientFailure(DriverError):
    """Transport I/O error (connection refused, timeout, reset)."""

    def __init__(self, message: str):
        super().__init__("E501", message)


class ApiError(DriverError):
    """Non-success HTTP status returned by the API.

    Status code, reason phrase and provider message are preserved verbatim.
    """

    def __init__(self, status: int, reason: str, message: str, code: str = "E502"):
        self.status = status
        self.reason = reason
        super().__init__(code, f"{status} {reason}: {message}")
        self.provider_message = message


class MalformedResponse(ApiError):
    """Response body could not be parsed."""

    def __init__(self, status: int, reason: str, message: str):
        super().__init__(status, reason, message, code="E503")


class BusinessFailure(DriverError):
    """A task reached the failed state."""


class ResourceNotFound(BusinessFailure):
    """The task (or a request) reported that a resource does not exist."""

    def __init__(self, key: str, value: str = ''):
        self.key = key
        self.value = value
        detail = f"{key}: {value}" if value else key
        super().__init__("E404", detail)


class GenericBusinessFailure(BusinessFailure):
    """Any other terminal task error.

    ``errors`` keeps the structured error map from the task payload;
    ``message`` is what gets surfaced to the caller.
    """

    def __init__(self, errors: dict, message: Optional[str] = None):
        self.errors = errors
        if message is None:
            message = json.dumps(errors, sort_keys=True)
        super().__init__("E500", message)


class PlacementExhausted(DriverError):
    """No storage candidate or resource pool qualifies."""

    def __init__(self, message: str):
        super().__init__("E301", message)


class ResourceNeverMaterialized(DriverError):
    """A resource did not become visible within its bounded wait."""

    def __init__(self, resource_id: str, waited: float):
        self.resource_id = resource_id
        super().__init__("E302", f"{resource_id} not visible after {waited:.0f}s")


class VmNotStopped(DriverError):
    """VM did not reach the stopped state before the deadline."""

    def __init__(self, vm_id: str, state: str):
        self.vm_id = vm_id
        self.state = state
        super().__init__("E303", f"VM {vm_id} not stopping (state={state}); refusing to remove")


class TransferFailure(DriverError):
    """Chunk exchange, begin or completion of a transfer session failed."""

    def __init__(self, message: str, transfer_id: Optional[str] = None):
        self.transfer_id = transfer_id
        super().__init__("E401", message)


class WorkflowError(DriverError):
    """Invalid workflow input or unexpected workflow state."""

    def __init__(self, message: str):
        super().__init__("E600", message)


class PollCancelled(DriverError):
    """A polling loop was cancelled through its cancellation signal."""

    def __init__(self, what: str):
        super().__init__("E601", f"Cancelled while waiting for {what}")
