"""Embedding provider glue.

The embedding model is external. Any callable mapping text to a vector is
accepted, synchronous or asynchronous; its vector dimensionality must stay
stable across calls.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Sequence, Union

EmbeddingFunction = Callable[[str], Union[Sequence[float], Awaitable[Sequence[float]]]]


async def get_embedding(embedding_function: EmbeddingFunction, text: str) -> list[float]:
    """Get embedding for text, handling sync/async functions."""
    result: Any = embedding_function(text)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        result = await result
    return [float(x) for x in result]
