from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import openai
from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import (
    GenerationTimeoutError,
    InvalidParameterError,
    MissingConfigurationError,
    ModelUnavailableError,
    RateLimitExceededError,
    TemporaryServiceUnavailableError,
)
from .models import ChatMessage
from .utils import content_to_text

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class GenerationService(Protocol):
    """Text generation collaborator: role-tagged messages in, generated text out."""

    async def chat(self, messages: Sequence[ChatMessage], *, model: str) -> str:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        MissingConfigurationError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise MissingConfigurationError("OPENAI_API_KEY is required for generation service calls")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Transport-level retries performed by the OpenAI client.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        InvalidParameterError: If ``model_name`` is blank.
        MissingConfigurationError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise InvalidParameterError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        role = message["role"]
        if role == "system":
            converted.append(SystemMessage(content=message["content"]))
        elif role == "assistant":
            converted.append(AIMessage(content=message["content"]))
        elif role == "user":
            converted.append(HumanMessage(content=message["content"]))
        else:
            raise InvalidParameterError(f"Unsupported message role: {role!r}")
    return converted


class ChatModelGenerationService:
    """Generation service backed by LangChain's ChatOpenAI.

    Provider failures are translated into the pipeline's error taxonomy so the
    retry policy can tell transient outages from configuration mistakes.
    """

    def __init__(
        self,
        *,
        temperature: float = 0.0,
        timeout: int = _DEFAULT_TIMEOUT,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        repo_root: Path | None = None,
    ) -> None:
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.repo_root = repo_root
        self._models: dict[str, ChatOpenAI] = {}

    def _model(self, model_name: str) -> ChatOpenAI:
        chat_model = self._models.get(model_name)
        if chat_model is None:
            chat_model = get_chat_model(
                model_name=model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                max_retries=self.max_retries,
                repo_root=self.repo_root,
            )
            self._models[model_name] = chat_model
        return chat_model

    async def chat(self, messages: Sequence[ChatMessage], *, model: str) -> str:
        chat_model = self._model(model)
        try:
            response: Any = await chat_model.ainvoke(to_langchain_messages(messages))
        except openai.RateLimitError as exc:
            raise RateLimitExceededError(f"Rate limit exceeded for {model}: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise GenerationTimeoutError(f"Generation request to {model} timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise ModelUnavailableError(f"Model {model} is unreachable: {exc}") from exc
        except openai.InternalServerError as exc:
            raise TemporaryServiceUnavailableError(f"Generation service unavailable: {exc}") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise MissingConfigurationError(f"Generation service rejected credentials: {exc}") from exc
        except openai.NotFoundError as exc:
            raise InvalidParameterError(f"Unknown model {model}: {exc}") from exc
        return content_to_text(getattr(response, "content", response))
