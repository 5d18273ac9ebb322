"""Chat-completion clients.

All stage services talk to an abstract ``ChatClient``:

    complete() -> _call_with_retry() -> _call_api()   <- only this differs per vendor

Subclasses implement ``_call_api`` (one raw request) and declare which
exceptions are worth retrying. Retry with exponential backoff lives here.
"""

from __future__ import annotations

import base64
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Type, Union

import openai
from openai import OpenAI

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    data: bytes
    media_type: str
    file_name: str = ""


ContentPart = Union[TextPart, ImagePart]


@dataclass
class ChatMessage:
    """A role-tagged message. ``content`` is plain text or a list of parts."""

    role: str
    content: Union[str, List[ContentPart]]

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls("system", text)

    @classmethod
    def user(cls, text: str, images: Optional[Sequence[ImagePart]] = None) -> "ChatMessage":
        if not images:
            return cls("user", text)
        return cls("user", [TextPart(text), *images])

    @property
    def text(self) -> str:
        """Concatenated text content, ignoring images."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass
class Completion:
    """Text returned by the model plus token accounting."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ChatClient(ABC):
    """Abstract chat-completion service."""

    MAX_RETRIES: int = 3
    RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = ()

    def __init__(self, model: str, sleep: Callable[[float], None] = time.sleep):
        self.model = model
        self._sleep = sleep

    def complete(
        self,
        messages: Sequence[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        """Send ``messages`` and return the completion.

        Raises whatever ``_call_api`` raises once retries are exhausted; callers
        treat that as a transient failure and leave their row untouched.
        """
        return self._call_with_retry(list(messages), temperature, max_tokens)

    @abstractmethod
    def _call_api(
        self,
        messages: List[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        """Make a single API call. Raise on failure."""

    def _call_with_retry(
        self,
        messages: List[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        for attempt in range(self.MAX_RETRIES):
            try:
                return self._call_api(messages, temperature, max_tokens)
            except self.RETRYABLE_ERRORS as e:
                if attempt == self.MAX_RETRIES - 1:
                    logger.error(
                        "%s API failed after %d attempts: %s",
                        self.__class__.__name__,
                        self.MAX_RETRIES,
                        e,
                    )
                    raise
                delay = 2**attempt
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %ds...",
                    self.__class__.__name__,
                    attempt + 1,
                    self.MAX_RETRIES,
                    e,
                    delay,
                )
                self._sleep(delay)
        raise RuntimeError("unreachable")


class OpenAIChatClient(ChatClient):
    """OpenAI (or OpenAI-compatible endpoint) chat completions."""

    RETRYABLE_ERRORS = (openai.APIError,)

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        max_retries: int = 3,
    ):
        super().__init__(model)
        self.MAX_RETRIES = max_retries
        # SDK-level retries off; backoff is handled in _call_with_retry
        self.client = OpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    @staticmethod
    def _to_openai(message: ChatMessage) -> dict:
        if isinstance(message.content, str):
            return {"role": message.role, "content": message.content}
        parts = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            else:
                encoded = base64.b64encode(part.data).decode("ascii")
                parts.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{part.media_type};base64,{encoded}"},
                    }
                )
        return {"role": message.role, "content": parts}

    def _call_api(
        self,
        messages: List[ChatMessage],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[self._to_openai(m) for m in messages],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        usage = response.usage
        return Completion(
            text=response.choices[0].message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            model=response.model or self.model,
        )


def build_image_parts(
    attachments: Iterable,
    base_dir: str = ".",
    max_bytes: int = MAX_IMAGE_BYTES,
) -> List[ImagePart]:
    """Load image attachments for a multimodal prompt.

    Missing, unreadable and oversized files are skipped with a warning.
    """
    parts: List[ImagePart] = []
    for attachment in attachments or []:
        if not (attachment.content_type or "").lower().startswith("image/"):
            continue
        path = os.path.join(base_dir, attachment.stored_path)
        if not os.path.exists(path):
            logger.warning(f"Attachment file not found: {path}")
            continue
        size = os.path.getsize(path)
        if size > max_bytes:
            logger.warning(
                f"Skipping oversized image attachment {attachment.file_name} ({size} bytes)"
            )
            continue
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except OSError as e:
            logger.warning(f"Failed to load image attachment {attachment.file_name}: {e}")
            continue
        parts.append(ImagePart(data=data, media_type=attachment.content_type, file_name=attachment.file_name))
        logger.info(
            f"Included image attachment '{attachment.file_name}' ({attachment.content_type}, {size} bytes)"
        )
    return parts


def get_chat_client(settings: Optional[Settings] = None) -> ChatClient:
    """Build the configured chat client."""
    settings = settings or get_settings()
    if not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    return OpenAIChatClient(
        api_key=settings.openai_api_key,
        model=settings.llm_model,
        base_url=settings.openai_base_url,
        max_retries=settings.llm_max_retries,
    )
