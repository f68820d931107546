"""Cheap, deterministic token estimation.

The same functions are used for budget checks and for truncation so the
two never disagree.
"""

import math

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str) -> int:
    """Approximate the token count of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(content: str) -> int:
    """Approximate the cost of one chat message including role framing."""
    return estimate_tokens(content) + MESSAGE_OVERHEAD_TOKENS


def truncate_to_tokens(text: str, max_tokens: int, keep: str = "head") -> str:
    """Cut text so that ``estimate_tokens`` of the result is <= max_tokens.

    Args:
        text: The text to truncate.
        max_tokens: Token ceiling.
        keep: 'head' keeps the beginning, 'tail' keeps the end.

    Returns:
        The text unchanged if it fits, otherwise cut at a word boundary.
    """
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max_tokens * CHARS_PER_TOKEN
    if keep == "tail":
        cut = text[-max_chars:]
        space = cut.find(" ")
        if 0 <= space < len(cut) - 1:
            cut = cut[space + 1:]
        return cut.strip()

    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.strip()
