"""CFS CSI controller exceptions.

Every error carries a status `code` and a `retryable` flag. The provisioning
controller requeues retryable errors and gives up on terminal ones; the
admission webhook rejects the request either way.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Status codes shared by provisioning, expansion and admission errors."""

    INVALID_ARGUMENT = "InvalidArgument"
    PERMISSION_DENIED = "PermissionDenied"
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    INTERNAL = "Internal"
    UNAVAILABLE = "Unavailable"
    UNIMPLEMENTED = "Unimplemented"


class CfsException(Exception):
    """Base exception for controller errors."""

    message = "An unknown exception occurred."
    code = ErrorCode.INTERNAL
    retryable = False

    def __init__(self, message=None, **kwargs):
        """Initialize exception with optional custom message."""
        self.kwargs = kwargs
        if message:
            self.message = message
        super(CfsException, self).__init__(self.message % kwargs if kwargs else self.message)


class InvalidArgument(CfsException):
    """Malformed request or unsupported combination of parameters."""

    message = "Invalid argument: %(details)s"
    code = ErrorCode.INVALID_ARGUMENT


class CapacityTooSmall(InvalidArgument):
    """Requested capacity rounds down to zero GiB."""

    message = "capacity %(capacity)s is too small, at least 1GiB for quota"


class SignerMismatch(InvalidArgument):
    """A pod references filesystems owned by different signers."""

    message = "not allowed different user's filesystems currently [%(expected)s, %(actual)s]"


class UnsupportedRuntimeClass(InvalidArgument):
    """Pod requests a runtime class that is not a known workload runtime."""

    message = "runtime class %(runtime_class)s is not supported"


class PermissionDenied(CfsException):
    """Credential or authorization check failed."""

    message = "no permission to %(action)s: %(details)s"
    code = ErrorCode.PERMISSION_DENIED


class ResourceNotFound(CfsException):
    """Generic resource not found error."""

    message = "%(kind)s %(name)s not found"
    code = ErrorCode.NOT_FOUND


class ResourceAlreadyExists(CfsException):
    """Generic resource already exists error."""

    message = "%(kind)s %(name)s already exists"
    code = ErrorCode.ALREADY_EXISTS


class InternalError(CfsException):
    """Unexpected failure of a dependency; safe to retry."""

    message = "Internal error: %(details)s"
    code = ErrorCode.INTERNAL
    retryable = True


class FilesystemManagerError(InternalError):
    """Filesystem manager API returned an error."""

    message = "Filesystem manager error: %(details)s"


class Unavailable(CfsException):
    """A remote service could not be reached."""

    message = "Service unavailable: %(details)s"
    code = ErrorCode.UNAVAILABLE
    retryable = True


class ManagerConnectionError(Unavailable):
    """Connection to a remote management API failed."""

    message = "Failed to connect to %(service)s: %(details)s"


class ManagerTimeout(Unavailable):
    """Remote management API timed out."""

    message = "%(service)s request timed out after %(timeout)s seconds"


class KubernetesAPIError(Unavailable):
    """Kubernetes API server returned an unexpected error."""

    message = "Kubernetes API error: %(details)s"


class Unimplemented(CfsException):
    """Operation intentionally not supported at this layer."""

    message = "%(operation)s is not implemented"
    code = ErrorCode.UNIMPLEMENTED
