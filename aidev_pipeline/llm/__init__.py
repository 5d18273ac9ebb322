"""
LLM round-trip layer.

Components:
    - client: Chat-completion clients with retry
    - protocol: Context budgeting and tagged response parsing
    - intake / architect / code_review: One reviewer per pipeline stage
"""

from .client import ChatClient, ChatMessage, Completion, ImagePart, TextPart
from .protocol import Parsed, Unparseable, parse_response

__all__ = [
    "ChatClient",
    "ChatMessage",
    "Completion",
    "ImagePart",
    "TextPart",
    "Parsed",
    "Unparseable",
    "parse_response",
]
