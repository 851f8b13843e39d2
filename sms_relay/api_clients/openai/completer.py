from typing import List, Optional

from openai import (
    APIError,
    APITimeoutError,
    AsyncAzureOpenAI,
    AsyncOpenAI,
    AuthenticationError,
    RateLimitError,
)

from sms_relay.chat.exceptions import CompletionServiceError
from sms_relay.chat.models import ChatMessage
from sms_relay.utils.logger import LoggerManager
from sms_relay.utils.usage_logger import CompletionUsageLogger

logger = LoggerManager.get_logger(__name__)


class ChatCompleter:
    """
    Async client for chat completions from OpenAI or Azure OpenAI.

    When an endpoint is given the Azure client is used and `model_name` is the
    deployment name; otherwise the public OpenAI API is called. SDK retries
    are disabled: a failed completion is reported to the caller, not retried.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = "gpt-3.5-turbo",
        endpoint: Optional[str] = None,
        api_version: str = "2024-06-01",
        timeout_seconds: float = 8.0,
        client: Optional[AsyncOpenAI] = None,
        usage_logger: Optional[CompletionUsageLogger] = None,
    ):
        """
        Args:
            api_key (str, optional): Provider API key.
            model_name (str): Default model, or Azure deployment name.
            endpoint (str, optional): Azure OpenAI resource endpoint.
            api_version (str): Azure OpenAI API version.
            timeout_seconds (float): Request timeout.
            client (AsyncOpenAI, optional): Preconfigured client (used by tests).
            usage_logger (CompletionUsageLogger, optional): Records token usage.

        Raises:
            CompletionServiceError: If no client is given and no API key is set.
        """
        if client is None:
            if not api_key:
                logger.error("Chat completion API key not configured")
                raise CompletionServiceError.from_missing_api_key()
            if endpoint:
                client = AsyncAzureOpenAI(
                    api_key=api_key,
                    azure_endpoint=endpoint,
                    api_version=api_version,
                    timeout=timeout_seconds,
                    max_retries=0,
                )
            else:
                client = AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)

        self.client = client
        self.model_name = model_name
        self.usage_logger = usage_logger
        logger.info(
            "ChatCompleter initialized",
            extra={"model": model_name, "azure": bool(endpoint)},
        )

    async def complete(
        self,
        messages: List[ChatMessage],
        user_id: str,
        model_name: Optional[str] = None,
    ) -> str:
        """
        Request a completion for the whole conversation.

        Cancelling the awaiting task aborts the HTTP request.

        Args:
            messages (List[ChatMessage]): Conversation so far, oldest first.
            user_id (str): Pseudonymous id passed as the provider's `user`.
            model_name (str, optional): Overrides the default model.

        Returns:
            str: Content of the first choice.

        Raises:
            CompletionServiceError: On provider errors or an empty response.
        """
        current_model = model_name or self.model_name
        logger.info(
            "Requesting chat completion",
            extra={"model": current_model, "message_count": len(messages), "user_id": user_id},
        )

        try:
            response = await self.client.chat.completions.create(
                model=current_model,
                messages=[message.to_provider_message() for message in messages],
                user=user_id,
            )
        except (AuthenticationError, RateLimitError, APITimeoutError, APIError) as e:
            logger.error(
                "Chat completion failed",
                extra={"model": current_model, "error_type": type(e).__name__},
            )
            raise CompletionServiceError.from_api_error(e) from e

        if self.usage_logger is not None:
            self.usage_logger.log_completion(
                model=current_model,
                user_id=user_id,
                message_count=len(messages),
                response=response,
            )

        choices = getattr(response, "choices", None)
        content = choices[0].message.content if choices else None
        if not content:
            logger.warning("Chat completion returned no content", extra={"model": current_model})
            raise CompletionServiceError.from_empty_response(current_model)

        logger.info(
            "Chat completion received", extra={"model": current_model, "length": len(content)}
        )
        return content

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.close()
        logger.debug("ChatCompleter closed", extra={"model": self.model_name})
