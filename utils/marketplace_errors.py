"""
Error taxonomy for marketplace operations.

Every mutating operation either succeeds or raises one of these, leaving stored
state unchanged. Routes translate them to HTTP status codes via ``status_code``
and show ``user_message`` to the caller.
"""

from typing import Optional


class MarketplaceError(Exception):
    """Base class for errors recovered at the API boundary"""

    status_code = 500

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message


class PermissionDeniedError(MarketplaceError):
    """Caller is not the party (buyer, seller, admin) the action requires"""

    status_code = 403


class NotFoundError(MarketplaceError):
    """Transaction or transfer record does not exist"""

    status_code = 404


class ValidationError(MarketplaceError):
    """State preconditions unmet or malformed input"""

    status_code = 400


class ConcurrentModificationError(ValidationError):
    """Row changed underneath us between read and write"""

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message, "This transaction was updated by another request. Please refresh and try again.")


class ProviderError(MarketplaceError):
    """An external provider call failed or returned an unexpected shape"""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, provider: str = "provider"):
        super().__init__(message, "The request could not be completed right now. Please try again.")
        self.status = status
        self.provider = provider


class GitHubServiceError(ProviderError):
    """GitHub API call failed"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status=status, provider="github")


class PaymentProcessorError(ProviderError):
    """Payment processor call failed"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status=status, provider="stripe")
