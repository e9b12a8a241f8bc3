"""
Chunking of ordered sequences into message-size-safe groups.

Chunk sizes come from ``SolsplitConfig.extend_chunk_size`` and
``SolsplitConfig.transfer_chunk_size``.
"""

from typing import List, Sequence, TypeVar

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    """
    Split a sequence into consecutive chunks.

    Every chunk except possibly the last has exactly ``size`` elements and
    joining the chunks in order gives back the input.

    Args:
        items: Ordered sequence to split
        size: Maximum chunk size, at least 1

    Returns:
        List of chunks; empty for empty input
    """
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
