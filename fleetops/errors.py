"""Error taxonomy for bulk fleet operations."""

from dataclasses import dataclass
from typing import List, Optional


class FleetOpsError(Exception):
    """Base class for all fleetops errors."""
    pass


class InputError(FleetOpsError):
    """Uploaded sheet cannot be processed at all (empty, missing columns)."""

    def __init__(self, message: str, missing_columns: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_columns = list(missing_columns or [])


@dataclass(frozen=True)
class RowError:
    """A single malformed row. Collected during parse, never raised."""

    row_number: int
    reason: str

    def __str__(self) -> str:
        return f"Row {self.row_number}: {self.reason}"


class BackendError(FleetOpsError):
    """A collaborator call returned an error response."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class TransportFailure(BackendError):
    """The collaborator could not be reached at all."""
    pass


class DispatchFailure(FleetOpsError):
    """A create or trigger submission was rejected or failed."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class OperationCancelled(FleetOpsError):
    """Work was abandoned because its cancellation token was cancelled."""
    pass


class InvalidTransition(FleetOpsError):
    """A candidate record was asked to move to a state it cannot reach."""
    pass
