"""
Token counting and token-based truncation for cell helpers and output limits.

Uses tiktoken's ``p50k_base`` encoding. The encoding is loaded on first use
and shared by every environment in the process.
"""

from __future__ import annotations

from functools import lru_cache

import tiktoken

ENCODING_NAME = "p50k_base"


@lru_cache(maxsize=1)
def get_encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding(ENCODING_NAME)


def encode(text: str) -> list[int]:
    # Special-token text in agent data is ordinary text here.
    return get_encoding().encode(text, disallowed_special=())


def count_tokens(text: str) -> int:
    return len(encode(text))


def truncate_tokens(text: str, limit: int) -> tuple[str, int]:
    """Keep the first ``limit`` tokens of ``text``.

    Returns the kept text and the total token count. Text with at most
    ``limit`` tokens comes back unchanged.
    """
    tokens = encode(text)
    if len(tokens) <= limit:
        return text, len(tokens)
    return get_encoding().decode(tokens[:limit]), len(tokens)
