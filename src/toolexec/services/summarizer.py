"""Compact, bounded summaries of execution output."""

import json
from typing import Any

DEFAULT_MAX_CHARS = 500


def _render(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output, sort_keys=True, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(output)


def truncate(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Cut text to at most max_chars, noting how much was dropped."""
    text = " ".join(text.split())
    if len(text) <= max_chars:
        return text
    marker = " ... [truncated]"
    return text[: max(0, max_chars - len(marker))] + marker[: max_chars]


def summarize_output(output: Any, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Build a host-facing summary of successful output.

    Args:
        output: Parsed or raw output of the artifact
        max_chars: Upper bound on the summary length

    Returns:
        Single-line summary no longer than max_chars
    """
    if isinstance(output, dict) and isinstance(output.get("results"), dict):
        results = output["results"]
        parts = [f"{name}: {_render(value)}" for name, value in results.items()]
        text = f"Executed {len(results)} tool(s). " + "; ".join(parts)
    else:
        rendered = _render(output)
        text = f"Output: {rendered}" if rendered else "Execution completed with no output"
    return truncate(text, max_chars)


def summarize_failure(prefix: str, detail: str | None, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Summary for a failed invocation, e.g. "Security: execution refused ..."."""
    text = f"{prefix}: {detail}" if detail else prefix
    return truncate(text, max_chars)
