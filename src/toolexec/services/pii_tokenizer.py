"""Reversible PII tokenization for execution output and summaries."""

import re
from typing import Any

import structlog

logger = structlog.get_logger()

# Applied in order; earlier patterns claim text before later ones see it
PII_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("CARD", re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    ("SSN", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("PHONE", re.compile(r"(?<![\w+])(?:\+\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("EMAIL", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    (
        "ADDRESS",
        re.compile(
            r"\b\d{1,5}\s+(?:[A-Z][a-z]+\s+){1,3}"
            r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|Court|Ct|Way|Place|Pl)\b\.?"
        ),
    ),
    ("NAME", re.compile(r"\b(?:Mr|Mrs|Ms|Miss|Dr|Prof)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?")),
]


class PIITokenizer:
    """
    Replaces PII with stable placeholder tokens such as ``[EMAIL_1]``.

    One tokenizer is one session: the same literal always maps to the same
    token within it, and every token can be mapped back with `detokenize`.
    """

    def __init__(self) -> None:
        self._by_value: dict[str, str] = {}
        self._by_token: dict[str, str] = {}
        self._counters: dict[str, int] = {}

    def _token_for(self, kind: str, value: str) -> str:
        token = self._by_value.get(value)
        if token is None:
            self._counters[kind] = self._counters.get(kind, 0) + 1
            token = f"[{kind}_{self._counters[kind]}]"
            self._by_value[value] = token
            self._by_token[token] = value
        return token

    def tokenize(self, text: str) -> tuple[str, bool]:
        """
        Replace PII in a string.

        Args:
            text: Input text

        Returns:
            Tokenized text and whether anything was replaced
        """
        replaced = False
        for kind, pattern in PII_PATTERNS:

            def substitute(match: re.Match[str], kind: str = kind) -> str:
                nonlocal replaced
                replaced = True
                return self._token_for(kind, match.group(0))

            text = pattern.sub(substitute, text)
        return text, replaced

    def tokenize_value(self, value: Any) -> tuple[Any, bool]:
        """Tokenize every string inside a JSON-like structure."""
        if isinstance(value, str):
            return self.tokenize(value)
        if isinstance(value, dict):
            changed = False
            result: dict[Any, Any] = {}
            for key, item in value.items():
                result[key], item_changed = self.tokenize_value(item)
                changed = changed or item_changed
            return result, changed
        if isinstance(value, (list, tuple)):
            changed = False
            items = []
            for item in value:
                new_item, item_changed = self.tokenize_value(item)
                items.append(new_item)
                changed = changed or item_changed
            return items, changed
        return value, False

    def detokenize(self, text: str) -> str:
        """Restore original values for tokens issued by this session."""
        for token, value in self._by_token.items():
            text = text.replace(token, value)
        return text

    @property
    def mapping(self) -> dict[str, str]:
        return dict(self._by_token)

    def get_stats(self) -> dict[str, int]:
        return dict(self._counters)
