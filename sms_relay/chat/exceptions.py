"""Custom exceptions for the relay's conversation flow."""


class RelayError(Exception):
    """Base class for errors raised by the relay.

    Attributes:
        original_error: Underlying exception that caused this error (optional)
    """

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class MalformedHistoryError(RelayError):
    """Stored session bytes do not deserialize into a conversation history.

    Callers treat this as a corrupt session and start a fresh history.
    """


class CompletionServiceError(RelayError):
    """Exception raised when the chat completion call fails.

    Causes include:
    - Missing or invalid API key
    - API timeout or network errors
    - Rate limiting / quota exhaustion
    - Content policy rejections
    - A response without any message content

    The failure is not retried; the sender gets no reply for that message.
    """

    @classmethod
    def from_missing_api_key(cls) -> "CompletionServiceError":
        """Create error for missing API key."""
        message = (
            "OpenAI API key not found. Set the OPENAI_API_KEY environment variable "
            "or openai.api_key in the relay config."
        )
        return cls(message)

    @classmethod
    def from_api_error(cls, error: Exception) -> "CompletionServiceError":
        """Create error for provider failures (timeout, rate limit, etc.)."""
        message = f"Chat completion failed: {type(error).__name__}: {error}"
        return cls(message, original_error=error)

    @classmethod
    def from_empty_response(cls, model_name: str) -> "CompletionServiceError":
        """Create error for a completion that carried no content."""
        return cls(f"Chat completion from model {model_name} returned no content")


class MessagingServiceError(RelayError):
    """Exception raised when an outbound SMS could not be created.

    Attributes:
        to: Destination address of the failed message
    """

    def __init__(self, message: str, to: str = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.to = to

    @classmethod
    def from_api_error(cls, error: Exception, to: str) -> "MessagingServiceError":
        status = getattr(error, "status", None)
        code = getattr(error, "code", None)
        message = f"Sending SMS failed (status={status}, code={code}): {error}"
        return cls(message, to=to, original_error=error)
