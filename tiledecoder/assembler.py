"""Output assembly: package decoded content with its transferable buffers."""

import math
from typing import Any, Iterable, List, Optional

from .models import PointsContent, TileContent, TileData, TileResult


def merge_transferables(target: List[Any], source: Iterable[Any]) -> List[Any]:
    """Append each buffer of ``source`` not already in ``target`` (by identity)."""
    seen = {id(t) for t in target}
    for buf in source:
        if id(buf) not in seen:
            target.append(buf)
            seen.add(id(buf))
    return target


def detach_transferables(content: Any) -> List[Any]:
    """Take the transferable list off a leaf content, leaving it empty."""
    if isinstance(content, TileContent):
        transferables = content.mesh.transferables
        content.mesh.transferables = []
        return transferables
    if isinstance(content, PointsContent):
        transferables = content.transferables
        content.transferables = []
        if content.mesh is not None:
            merge_transferables(transferables, content.mesh.transferables)
            content.mesh.transferables = []
        return transferables
    return []


def assemble(content: Optional[TileData], transferables: Optional[Iterable[Any]] = None,
             error: Optional[Exception] = None) -> TileResult:
    """Build the result handed to the host; buffers appear once each."""
    merged = merge_transferables([], transferables or [])
    return TileResult(error=error, content=content, transferables=merged)


def _finite(values):
    if values is None:
        return None
    return [float(v) if math.isfinite(v) else None for v in values]


def _attribute_bounds(attribute) -> dict:
    return {"min": _finite(attribute.min), "max": _finite(attribute.max)}


def summarize(content: Optional[TileData]) -> dict:
    """JSON-friendly description of decoded content (no vertex data)."""
    if content is None:
        return {}
    if isinstance(content, dict):
        return {"magic": "json", "keys": sorted(content.keys())}
    if isinstance(content, TileContent):
        primitives = list(content.mesh.iter_primitives())
        positions = [p.attributes["POSITION"] for p in primitives if "POSITION" in p.attributes]
        return {
            "magic": content.magic,
            "mode": "shared_position" if content.share_position else "projected",
            "rtc_center": content.rtc_center,
            "rtc_coord": content.rtc_coord,
            "proj_center": content.proj_center,
            "primitives": len(primitives),
            "vertices": sum(p.count for p in positions),
            "bounds": [_attribute_bounds(p) for p in positions],
            "flat_textures": sum(1 for t in content.mesh.textures
                                 if t.image is not None and t.image.color is not None),
        }
    if isinstance(content, PointsContent):
        position = content.data.get("POSITION")
        return {
            "magic": content.magic,
            "rtc_center": content.rtc_center,
            "rtc_coord": content.rtc_coord,
            "points": position.count if position is not None else 0,
            "attributes": sorted(content.data.keys()),
            "bounds": _attribute_bounds(position) if position is not None else None,
        }
    return {
        "magic": content.magic,
        "content": [summarize(child) for child in content.content],
    }
