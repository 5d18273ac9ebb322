"""
Product reference documents shared by the intake and architect prompts.
"""

import logging
import os
from typing import List, Optional, Tuple

from ..pipeline.cache import ProcessCache
from ..llm.prompts import FALLBACK_REFERENCE_CONTEXT

logger = logging.getLogger(__name__)

# Highest priority first; later documents are truncated first
REFERENCE_FILES = (
    "ApplicationObjectives.md",
    "ApplicationSalesPack.md",
    "ApplicationFeatures.md",
)

MIN_DOCUMENT_CHARS = 200
CONTEXT_KEY = "context"


def fit_documents(docs: List[Tuple[str, str]], max_chars: int) -> str:
    """Join ``=== name ===`` sections, truncating lower-priority documents to fit."""
    total = sum(len(content) + len(name) + 10 for name, content in docs)
    if total <= max_chars:
        return "\n\n".join(f"=== {name} ===\n{content}" for name, content in docs)

    logger.warning(f"Reference context ({total} chars) exceeds budget ({max_chars} chars), truncating")
    remaining = max_chars
    parts = []
    for name, content in docs:
        header = f"=== {name} ==="
        overhead = len(header) + 3
        available = remaining - overhead
        if available <= MIN_DOCUMENT_CHARS:
            logger.warning(f"Skipping {name}: insufficient budget remaining")
            break
        if len(content) <= available:
            parts.append(f"{header}\n{content}")
            remaining -= len(content) + overhead
        else:
            omitted = len(content) - available
            parts.append(f"{header}\n{content[:available]}\n\n[... truncated: {omitted} chars omitted ...]")
            logger.info(f"Truncated {name} from {len(content)} to {available} chars")
            remaining = 0
    return "\n\n".join(parts)


class ReferenceDocuments:
    """Loads and caches the reference context. ``reload()`` drops the cache."""

    def __init__(
        self,
        docs_dir: str,
        max_chars: int = 20000,
        cache: Optional[ProcessCache] = None,
    ):
        self.docs_dir = docs_dir
        self.max_chars = max_chars
        self.cache = cache or ProcessCache("reference-documents")

    def _load(self) -> List[Tuple[str, str]]:
        docs = []
        for name in REFERENCE_FILES:
            path = os.path.join(self.docs_dir, name)
            if not os.path.exists(path):
                logger.warning(f"Reference document not found: {path}")
                continue
            with open(path, encoding="utf-8") as fh:
                content = fh.read()
            docs.append((name, content))
            logger.info(f"Loaded reference document: {name} ({len(content)} chars)")
        return docs

    def _build(self) -> str:
        docs = self._load()
        if not docs:
            logger.warning(f"No reference documents found in {self.docs_dir}")
            return FALLBACK_REFERENCE_CONTEXT
        return fit_documents(docs, self.max_chars)

    def system_prompt_context(self) -> str:
        return self.cache.get_or_load(CONTEXT_KEY, self._build)

    def char_count(self) -> int:
        return len(self.system_prompt_context())

    def reload(self) -> None:
        self.cache.invalidate()
        logger.info("Reference document cache cleared, will reload on next access")
