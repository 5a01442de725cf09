"""Composite (cmpt) decoding over an explicit work list.

Nested composites push their inner tiles back onto the list instead of
recursing, so nesting depth is bounded only by memory. Each child writes
into a preallocated slot of its parent, which keeps original order no matter
when the child is processed.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from .assembler import merge_transferables
from .constants import MAGIC_CMPT
from .loaders import split_composite
from .models import CompositeContent
from .sniffer import TileFormat, read_magic, sniff_format

logger = logging.getLogger(__name__)

# (format, buffer, byte_offset) -> (content, transferables)
LeafDecoder = Callable[[TileFormat, Any, int], Tuple[Any, List[Any]]]

LEAF = "leaf"
COMPOSITE = "composite"


@dataclass
class WorkItem:
    kind: str
    buffer: Any
    byte_offset: int
    parent: Optional[CompositeContent]
    slot: int


def decode_composite(buffer, decode_leaf: LeafDecoder,
                     byte_offset: int = 0) -> Tuple[CompositeContent, List[Any]]:
    """Decode a cmpt buffer into ordered child contents plus merged transferables."""
    root = CompositeContent()
    transferables: List[Any] = []
    stack = [WorkItem(COMPOSITE, buffer, byte_offset, None, 0)]
    leaves = 0

    while stack:
        item = stack.pop()
        if item.kind == COMPOSITE:
            node = root if item.parent is None else CompositeContent()
            if item.parent is not None:
                item.parent.content[item.slot] = node
            inner = split_composite(item.buffer, item.byte_offset)
            node.content = [None] * len(inner)
            # reversed so the stack pops children in file order
            for slot in reversed(range(len(inner))):
                offset = inner[slot][0]
                kind = COMPOSITE if read_magic(item.buffer, offset) == MAGIC_CMPT else LEAF
                stack.append(WorkItem(kind, item.buffer, offset, node, slot))
        else:
            fmt = sniff_format(item.buffer, item.byte_offset)
            content, leaf_transferables = decode_leaf(fmt, item.buffer, item.byte_offset)
            item.parent.content[item.slot] = content
            merge_transferables(transferables, leaf_transferables)
            leaves += 1

    logger.debug(f"Decoded composite with {leaves} leaf tiles")
    return root, transferables
