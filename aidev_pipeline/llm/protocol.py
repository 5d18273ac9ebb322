"""
LLM round-trip protocol: context budgeting and response parsing.

Every stage follows the same shape: assemble prompt context within a
character budget, call the model, then parse the reply into either a
``Parsed`` value or an ``Unparseable`` marker that the stage turns into its
own fallback. Malformed model output never raises past this module.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar, Union

from pydantic import TypeAdapter, ValidationError

TRUNCATION_MARKER = "\n[...truncated]"
CHARS_PER_TOKEN = 4
# Rough per-image cost in tokens for a high-detail image
IMAGE_TOKEN_COST = 765

T = TypeVar("T")


@dataclass
class ContextBlock:
    """A named piece of prompt context.

    ``share`` is the fraction of the budget the block may use on its own
    (None means no individual cap). When the total is still over budget the
    block with the lowest ``priority`` gives up characters first.
    """

    name: str
    text: str
    share: Optional[float] = None
    priority: int = 0


@dataclass
class AllocatedContext:
    texts: Dict[str, str]
    truncated: List[str] = field(default_factory=list)

    def __getitem__(self, name: str) -> str:
        return self.texts[name]

    @property
    def total_length(self) -> int:
        return sum(len(t) for t in self.texts.values())


def truncate(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cut ``text`` to ``limit`` characters and append ``marker`` if it was cut."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(limit, 0)] + marker


def allocate_context(
    blocks: Sequence[ContextBlock],
    budget: int,
    marker: str = TRUNCATION_MARKER,
) -> AllocatedContext:
    """Fit ``blocks`` into ``budget`` characters.

    The result never exceeds ``budget + len(marker) * len(blocks)``.
    """
    budget = max(budget, 0)
    kept: Dict[str, int] = {}
    cut: Dict[str, bool] = {}

    for block in blocks:
        length = len(block.text or "")
        if block.share is not None:
            limit = int(budget * block.share)
            if length > limit:
                length = limit
                cut[block.name] = True
        kept[block.name] = length

    overflow = sum(kept.values()) - budget
    if overflow > 0:
        # Lowest priority first; ties go to the block listed last
        order = sorted(enumerate(blocks), key=lambda item: (item[1].priority, -item[0]))
        for _, block in order:
            if overflow <= 0:
                break
            take = min(kept[block.name], overflow)
            if take <= 0:
                continue
            kept[block.name] -= take
            cut[block.name] = True
            overflow -= take

    texts: Dict[str, str] = {}
    truncated: List[str] = []
    for block in blocks:
        text = (block.text or "")[: kept[block.name]]
        if cut.get(block.name):
            text += marker
            truncated.append(block.name)
        texts[block.name] = text
    return AllocatedContext(texts=texts, truncated=truncated)


def input_char_budget(
    max_input_tokens: int,
    system_template: str,
    user_message: str,
    image_count: int = 0,
    placeholder_chars: int = 9,
    minimum: int = 1000,
) -> int:
    """Characters left for variable context after the fixed parts of a prompt.

    ``placeholder_chars`` is the length of the template placeholders that the
    context blocks replace; 300 characters are reserved for the short values
    substituted alongside them.
    """
    max_input_chars = max_input_tokens * CHARS_PER_TOKEN
    overhead = (
        len(system_template)
        - placeholder_chars
        + 300
        + len(user_message)
        + image_count * IMAGE_TOKEN_COST * CHARS_PER_TOKEN
    )
    return max(minimum, max_input_chars - overhead)


_FENCE_START = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\n?")
_FENCE_END = re.compile(r"\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```/```json fence line and a trailing fence."""
    text = (text or "").strip()
    if text.startswith("```"):
        text = _FENCE_START.sub("", text, count=1)
        text = _FENCE_END.sub("", text, count=1)
    return text.strip()


@dataclass(frozen=True)
class Parsed(Generic[T]):
    data: T
    raw_text: str


@dataclass(frozen=True)
class Unparseable:
    raw_text: str
    error: str


ParseResult = Union[Parsed[Any], Unparseable]


def parse_response(raw_text: str, schema: Any) -> ParseResult:
    """Parse a model reply as JSON and validate it against ``schema``.

    ``schema`` is anything pydantic can build a ``TypeAdapter`` for: a model
    class, ``List[str]`` and so on.
    """
    body = strip_code_fences(raw_text)
    if not body:
        return Unparseable(raw_text=raw_text or "", error="empty response")
    try:
        data = TypeAdapter(schema).validate_json(body)
    except ValidationError as e:
        return Unparseable(raw_text=raw_text, error=str(e))
    return Parsed(data=data, raw_text=raw_text)
