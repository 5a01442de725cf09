"""Write decoded tile content back out as GLB for inspection."""

import logging
from typing import Optional, Union

import numpy as np
import trimesh

from .constants import POINTS_MODE, TRIANGLES_MODE
from .matrices import is_identity, node_matrix, transform_points
from .models import CompositeContent, DecodedMesh, PointsContent, Primitive, TileContent, TileData

logger = logging.getLogger(__name__)


def _material(mesh: DecodedMesh, primitive: Primitive):
    """Solid PBR material from the glTF material, or a flattened texture colour."""
    color = [0.8, 0.8, 0.8, 1.0]
    if primitive.material is not None and primitive.material < len(mesh.materials):
        pbr = mesh.materials[primitive.material].get("pbrMetallicRoughness", {})
        color = list(pbr.get("baseColorFactor", color))
        texture_index = pbr.get("baseColorTexture", {}).get("index")
        if texture_index is not None and texture_index < len(mesh.textures):
            image = mesh.textures[texture_index].image
            if image is not None and image.color is not None:
                color = [c * f for c, f in zip(image.color, color)]
    return trimesh.visual.material.PBRMaterial(baseColorFactor=color, doubleSided=True)


def _primitive_geometry(mesh: DecodedMesh, primitive: Primitive):
    position = primitive.attributes.get("POSITION")
    if position is None or position.count == 0:
        return None
    vertices = position.array[:, :3].astype(np.float64)
    if primitive.quantization is not None:
        vertices = primitive.quantization.dequantize(position.array)
    matrix = node_matrix(primitive.matrices)
    if not is_identity(matrix):
        vertices = transform_points(matrix, vertices)

    if primitive.mode == POINTS_MODE:
        return trimesh.PointCloud(vertices)
    if primitive.mode != TRIANGLES_MODE:
        logger.debug(f"Skipping primitive with unsupported mode {primitive.mode}")
        return None

    if primitive.indices is not None:
        faces = primitive.indices.array.reshape(-1).astype(np.int64)
    else:
        faces = np.arange(len(vertices), dtype=np.int64)
    faces = faces[:len(faces) - len(faces) % 3].reshape(-1, 3)
    if len(faces) == 0:
        return None
    geometry = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
    geometry.visual = trimesh.visual.TextureVisuals(material=_material(mesh, primitive))
    return geometry


def _add_mesh(scene: trimesh.Scene, mesh: DecodedMesh, prefix: str) -> None:
    for i, primitive in enumerate(mesh.iter_primitives()):
        geometry = _primitive_geometry(mesh, primitive)
        if geometry is not None:
            scene.add_geometry(geometry, geom_name=f"{prefix}_{i}")


def _add_points(scene: trimesh.Scene, content: PointsContent, prefix: str) -> None:
    position = content.data.get("POSITION")
    if position is None or position.count == 0:
        return
    colors = None
    for name in ("RGBA", "RGB"):
        if name in content.data:
            raw = content.data[name].array.astype(np.uint8)
            alpha = np.full((len(raw), 1), 255, dtype=np.uint8)
            colors = raw if raw.shape[1] == 4 else np.hstack([raw, alpha])
            break
    vertices = position.array[:, :3].astype(np.float64)
    scene.add_geometry(trimesh.PointCloud(vertices, colors=colors), geom_name=f"{prefix}_points")


def content_to_scene(content: TileData) -> trimesh.Scene:
    """One trimesh geometry per triangle primitive; points become point clouds."""
    scene = trimesh.Scene()
    if isinstance(content, CompositeContent):
        leaves = list(content.iter_leaves())
    else:
        leaves = [content]

    for n, leaf in enumerate(leaves):
        prefix = f"{leaf.magic}_{n}"
        if isinstance(leaf, TileContent):
            _add_mesh(scene, leaf.mesh, prefix)
        elif isinstance(leaf, PointsContent):
            _add_points(scene, leaf, prefix)
            if leaf.mesh is not None:
                _add_mesh(scene, leaf.mesh, f"{prefix}_instance")
    return scene


def export_glb(content: TileData, output_path: Optional[str] = None) -> Union[bytes, str]:
    """Export decoded content as GLB; returns the bytes when no path is given."""
    if isinstance(content, dict):
        raise ValueError("Tileset manifests have no geometry to export")
    scene = content_to_scene(content)
    if len(scene.geometry) == 0:
        raise ValueError("No valid geometry to generate GLB file")
    if output_path is None:
        return scene.export(file_type='glb')
    scene.export(str(output_path), file_type='glb')
    logger.info(f"Exported {len(scene.geometry)} geometries to {output_path}")
    return str(output_path)
