from typing import Optional


class RegistryError(Exception):
    """Base class for failures raised by the domain registry."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RecordValidationError(RegistryError):
    """A backend record is missing a required field or carries an invalid one."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        super().__init__(message)


class DuplicateKeyError(RegistryError):
    """Raised when inserting a domain that is already registered."""

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"Domain already exists: {domain}")


class StorageError(RegistryError):
    """The underlying database failed (I/O error, corruption, locked file)."""


class DispatchError(Exception):
    """
    Terminal routing outcome for one inbound request.

    ``detail`` is the only text ever shown to the client; the exception
    message may carry internal context for the logs.
    """

    status_code = 500
    detail = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.detail)


class MissingHostError(DispatchError):
    status_code = 400
    detail = "Missing Host header"


class NoRouteError(DispatchError):
    status_code = 404
    detail = "Domain not found"


class RoutingInternalError(DispatchError):
    status_code = 500
    detail = "Internal server error"


class InvalidBackendConfigError(DispatchError):
    status_code = 500
    detail = "Invalid target configuration"


class BackendUnreachableError(DispatchError):
    status_code = 502
    detail = "Bad gateway"
