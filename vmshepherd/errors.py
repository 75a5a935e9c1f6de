"""Error taxonomy shared by every backend."""


class ShepherdError(Exception):
    """Base class for failures raised by vmshepherd itself."""


class TransientProviderError(ShepherdError):
    """A provider error the current call site expects to clear up on its own.

    Only raised from inside a ``transient_errors`` block, so a poller can
    count it as "not yet" instead of a failure.
    """

    def __init__(self, code, message=""):
        self.code = code
        super().__init__(message or code)


class RetryLimitExceeded(ShepherdError):
    """A polled condition never became true within its retry budget."""

    def __init__(self, description, limit, interval, last_error=None):
        self.description = description
        self.limit = limit
        self.interval = interval
        self.last_error = last_error
        message = f"Retry limit exceeded waiting for {description} ({limit} attempts, {interval}s apart)"
        if last_error is not None:
            message += f"; last error: {last_error}"
        super().__init__(message)


class UnexpectedStateError(ShepherdError):
    """A resource reported a status outside the known vocabulary, or a terminal one."""

    def __init__(self, resource, status, message=None):
        self.resource = resource
        self.status = status
        super().__init__(message or f"Unexpected status for {resource} : {status}")


class RemediationFailedError(UnexpectedStateError):
    """A remediable failure state came back after its one remediation."""


class ValidationRejection(ShepherdError):
    """The provider refused to describe an object, possibly because it is gone."""

    def __init__(self, resource, message=""):
        self.resource = resource
        super().__init__(message or f"Provider rejected status query for {resource}")


class ConfigurationError(ShepherdError):
    """Settings are missing a field or reference an unknown object."""


class UnknownBackend(ConfigurationError):
    """The settings name an IaaS type with no backend."""

    def __init__(self, iaas_type):
        self.iaas_type = iaas_type
        super().__init__(f"Unknown IaaS type: {iaas_type!r}")


class VmAlreadyRunningError(ShepherdError):
    """The address a deploy is about to claim already answers."""


class ObjectNotFoundError(ShepherdError):
    """A named provider object (vApp, catalog, vdc) does not exist."""


class ProviderTaskError(ShepherdError):
    """An asynchronous provider task finished in an error state."""
