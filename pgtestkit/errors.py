"""
Exceptions for pgtestkit.

Every failure raised by the server lifecycle, the database provisioner and the
bundled connectors derives from PgTestKitError so callers can catch the whole
family at once.
"""

from typing import List, Sequence


class PgTestKitError(Exception):
    """Base exception for pgtestkit operations."""
    pass


class AggregateError(PgTestKitError):
    """
    Raised when a multi-step cleanup collected more than one failure.

    Attributes:
        action: Short description of what was being done
        errors: Every sub-error, in the order the steps ran
    """

    def __init__(self, action: str, errors: Sequence[BaseException]):
        self.action = action
        self.errors: List[BaseException] = list(errors)
        details = "; ".join(str(error) for error in self.errors)
        super().__init__(f"{len(self.errors)} error(s) occurred while {action}: {details}")


class ServerAlreadyStoppedError(PgTestKitError):
    """Raised when a start is attempted after the server has been stopped."""
    pass


class ServerNotRunningError(PgTestKitError):
    """Raised when provisioning is attempted before start or after stop."""
    pass


class InvalidArgumentError(PgTestKitError, ValueError):
    """Raised when a required argument is missing or malformed."""
    pass


class ServerProcessError(PgTestKitError):
    """Raised by a server process when it cannot be started or stopped."""
    pass


class ServerStartError(PgTestKitError):
    """Raised when the server could not be brought up."""
    pass


class ServerStopError(AggregateError):
    """Raised when one or more steps of server teardown failed."""
    pass


class ProvisionError(PgTestKitError):
    """Raised when a test database could not be created, connected or reset."""
    pass


class ResetError(PgTestKitError):
    """Raised when a test database could not be reset to a clean state."""
    pass


class TeardownError(AggregateError):
    """Raised when closing a test database handle failed."""
    pass


class ConnectorError(PgTestKitError):
    """Raised by connectors when used outside their connect/close window."""
    pass


def wrap_error(message: str, cause: BaseException) -> PgTestKitError:
    """Build a PgTestKitError describing one failed cleanup step."""
    error = PgTestKitError(f"{message}: {cause}")
    error.__cause__ = cause
    return error
