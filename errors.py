from typing import Dict, Optional, Type

# --------------------------------------------------------------------
# Shared status -> message table (reused by both providers)
# --------------------------------------------------------------------

STATUS_MESSAGES: Dict[int, str] = {
    400: "Invalid request. Please check your search terms.",
    401: "Authentication failed. Please check API configuration.",
    403: "Access denied. API key may be invalid or expired.",
    404: "Not found.",
    429: "Rate limit exceeded. Please wait and try again.",
}

SERVER_ERROR_MESSAGE = "Service temporarily unavailable. Please try again later."
NETWORK_ERROR_MESSAGE = "Network error. Please check your connection and try again."
TIMEOUT_MESSAGE = "Request timed out. Please try again."


def status_message(status: int, provider: Optional[str] = None, context: Optional[str] = None) -> str:
    """User-facing message for an HTTP status, optionally naming the provider."""
    context_msg = f' for "{context}"' if context else ""
    if provider is None:
        if status >= 500: return SERVER_ERROR_MESSAGE
        return STATUS_MESSAGES.get(status, f"Request failed with status {status}")

    if status == 400: return f"Invalid search query{context_msg}."
    if status == 401: return f"{provider} API authentication failed. Please check your API key."
    if status == 403: return f"{provider} API access forbidden. Please check your API key permissions."
    if status == 404: return f"Book not found{context_msg}."
    if status == 429: return f"{provider} API rate limit exceeded. Please try again later."
    if status >= 500: return f"{provider} API is temporarily unavailable. Please try again later."
    return f"{provider} API error{context_msg}: request failed with status {status}"


# --------------------------------------------------------------------
# Taxonomy
# --------------------------------------------------------------------

class BookServiceError(Exception):
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ConfigurationError(BookServiceError):
    pass


class AllProvidersFailedError(BookServiceError):
    pass


class ApiError(BookServiceError):
    """Transport-level failure normalized into one shape."""

    is_network_error = False
    is_timeout = False

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, provider)
        self.status = status
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return self.is_network_error or self.is_timeout or (self.status is not None and self.status >= 500)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "isNetworkError": self.is_network_error,
            "isTimeout": self.is_timeout,
            "isRetryable": self.is_retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status!r}, message={self.message!r})"


class NetworkError(ApiError):
    is_network_error = True


class RequestTimeoutError(ApiError, TimeoutError):
    is_timeout = True


class RateLimitError(ApiError):
    pass


class AuthError(ApiError):
    pass


class NotFoundError(ApiError):
    pass


class ServerError(ApiError):
    pass


class ResponseValidationError(ApiError):
    pass


def error_for_status(status: int) -> Type[ApiError]:
    if status == 404: return NotFoundError
    if status == 429: return RateLimitError
    if status in (401, 403): return AuthError
    if status >= 500: return ServerError
    return ApiError


def for_provider(error: ApiError, provider: str, context: Optional[str] = None) -> ApiError:
    """Re-issue a transport error with a provider-specific message.

    The class, status and code are preserved so callers can still
    branch on the taxonomy.
    """
    # Decode failures carry the 2xx status of the response they came from.
    if isinstance(error, ResponseValidationError):
        message = f"Received invalid response from {provider} API. Please try again."
    elif error.status is not None:
        message = status_message(error.status, provider, context)
    elif error.is_timeout:
        message = f"{provider} API request timed out. Please try again."
    elif error.is_network_error:
        message = f"Network error while contacting {provider} API. Please check your connection."
    else:
        context_msg = f' for "{context}"' if context else ""
        message = f"{provider} API error{context_msg}: {error.message}"
    return type(error)(message, status=error.status, code=error.code, provider=provider)
