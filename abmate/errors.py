from enum import Enum
from typing import Optional


class ABMError(Exception):
    """Base class for everything the ABM client raises."""


class InvalidKeyFormat(ABMError):
    """The private key could not be decoded as a P-256 key in any supported encoding."""


class EncodingFailure(ABMError):
    """The JWT encoder could not produce a signed client assertion."""


class AssertionMissing(ABMError):
    """An API call was attempted before a client assertion was generated."""

    def __init__(self, message="Generate JWT first"):
        super().__init__(message)


class AuthenticationFailed(ABMError):
    """
    The token endpoint rejected the client assertion.
    Carries the OAuth error code/description when the body could be parsed.
    """

    def __init__(
        self,
        status_code: int,
        error_code: Optional[str] = None,
        description: Optional[str] = None,
        body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.description = description
        self.body = body
        if error_code:
            message = f"Authentication failed ({status_code}): {error_code}"
            if description:
                message += f" - {description}"
        else:
            message = (
                f"An unknown authentication error occurred ({status_code}). "
                f"Response: {body or 'No response body'}"
            )
        super().__init__(message)


class APIError(ABMError):
    def __init__(self, status_code: int, body: Optional[str] = None, operation: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}API returned status {status_code}")


class NoCoverageAvailable(ABMError):
    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"No AppleCare coverage information available for device {device_id}.")


class TransportError(ABMError):
    """Network-level failure (DNS, TLS, timeout, connection reset)."""


class FailurePolicy(str, Enum):
    # Propagate every failure to the caller.
    RAISE = "raise"
    # Treat any failure as "nothing there" and return None.
    ABSENT = "absent"
