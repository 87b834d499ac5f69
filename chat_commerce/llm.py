"""
Language model client.

Thin async wrapper over the OpenAI chat completions API that returns either
a text reply or the tool calls the model wants to make.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import openai

from chat_commerce.config import CHAT_MODEL, MODEL_TIMEOUT_SECONDS, OPENAI_API_KEY, OPENAI_BASE_URL
from chat_commerce.exceptions import ExternalServiceError
from chat_commerce.models import ToolCall

logger = logging.getLogger(__name__)


@dataclass
class ModelReply:
    """Text and/or tool calls produced by one model call."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


class ChatModel(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply:
        ...


class OpenAIChatModel:
    """
    ChatModel backed by an OpenAI-compatible endpoint.

    Any API failure (connection, timeout, non-2xx status) is raised as
    ExternalServiceError; no automatic retries are made.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        chat_model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the client with API configuration.

        Args:
            api_key: OpenAI API key
            base_url: API base URL
            chat_model: Model to use for chat completion
            timeout: Request timeout in seconds
        """
        self.api_key = api_key or OPENAI_API_KEY
        self.base_url = base_url or OPENAI_BASE_URL
        self.chat_model = chat_model or CHAT_MODEL

        if not self.api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        self.client = openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=timeout or MODEL_TIMEOUT_SECONDS,
            max_retries=0,
        )

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply:
        request: Dict[str, Any] = {"model": self.chat_model, "messages": messages}
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            response = await self.client.chat.completions.create(**request)
        except openai.OpenAIError as e:
            raise ExternalServiceError(code="MODEL_ERROR", message=str(e)) from e

        if not response.choices:
            raise ExternalServiceError(code="MODEL_ERROR", message="Model returned no choices")

        message = response.choices[0].message
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_decode_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        return ModelReply(text=message.content or "", tool_calls=tool_calls)


def _decode_arguments(raw: Optional[str]) -> Any:
    """Decode tool arguments; malformed JSON is passed through for the registry to reject."""
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model produced malformed tool arguments")
        return raw
    return decoded if isinstance(decoded, dict) else raw
