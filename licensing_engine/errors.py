"""
Licensing Errors
Error taxonomy shared by the activation, checkout and recovery flows
"""

from dataclasses import dataclass
from typing import Optional


ERROR_DOMAIN = "licensing_engine"


class ErrorCode:
    """Stable error codes carried by ErrorRecord"""
    NETWORK_FAILURE = "network_failure"
    INVALID_INPUT = "invalid_input"
    INVALID_LICENSE_CODE = "invalid_license_code"
    INVALID_EMAIL = "invalid_email"
    SERVER_REJECTED = "server_rejected"
    SERVER_ERROR = "server_error"
    BUSY = "busy"
    UNSUPPORTED = "unsupported"
    INVALID_STATE = "invalid_state"
    STORE_FAILURE = "store_failure"
    CHECKOUT_TIMEOUT = "checkout_timeout"
    ORDER_TIMEOUT = "order_timeout"


@dataclass(frozen=True)
class ErrorRecord:
    """Immutable description of an error, passed by value to callbacks"""
    domain: str
    code: str
    message: str
    underlying: Optional[str] = None

    def to_dict(self):
        return {
            "domain": self.domain,
            "code": self.code,
            "message": self.message,
            "underlying": self.underlying,
        }


class LicensingError(Exception):
    """Base exception for all licensing engine errors"""

    default_code = ErrorCode.SERVER_REJECTED

    def __init__(self, message: str, code: Optional[str] = None,
                 underlying: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.underlying = underlying

    @property
    def record(self) -> ErrorRecord:
        return ErrorRecord(
            domain=ERROR_DOMAIN,
            code=self.code,
            message=self.message,
            underlying=repr(self.underlying) if self.underlying is not None else None,
        )


class NetworkFailureError(LicensingError):
    """Transient failure reaching the vendor backend; callers may re-invoke"""
    default_code = ErrorCode.NETWORK_FAILURE


class InvalidInputError(LicensingError):
    """Rejected license code or email"""
    default_code = ErrorCode.INVALID_INPUT


class ServerRejectedError(LicensingError):
    """The vendor backend refused the request; terminal for the attempt"""
    default_code = ErrorCode.SERVER_REJECTED


class BusyError(LicensingError):
    """Another attempt for the same product is already in flight"""
    default_code = ErrorCode.BUSY


class UnsupportedError(LicensingError):
    """Operation not supported for this product"""
    default_code = ErrorCode.UNSUPPORTED


class InvalidStateError(LicensingError):
    """Operation not valid from the current state"""
    default_code = ErrorCode.INVALID_STATE


class LicenseStoreError(LicensingError):
    """Raised when the local license store cannot be written"""
    default_code = ErrorCode.STORE_FAILURE
