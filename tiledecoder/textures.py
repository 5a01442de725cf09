"""Collapse single-colour textures into a flat RGBA material colour."""

import logging

import numpy as np

from .models import DecodedMesh, Image

logger = logging.getLogger(__name__)


def flatten_image(image: Image) -> bool:
    """Replace a uniform RGBA pixel array with ``image.color``.

    Returns True when the image was flattened.
    """
    arr = image.array
    if arr is None or len(arr) < 4:
        return False
    pixels = np.asarray(arr, dtype=np.uint8).reshape(-1)
    usable = len(pixels) - len(pixels) % 4
    pixels = pixels[:usable].reshape(-1, 4)
    first = pixels[0]
    if not np.all(pixels == first):
        return False
    image.color = [float(c) / 255 for c in first]
    image.array = None
    return True


def flatten_uniform_textures(mesh: DecodedMesh) -> int:
    """Flatten every uniform texture image of ``mesh``; returns the count.

    Dropped pixel arrays are also removed from the mesh's transferables.
    """
    flattened = 0
    dropped = []
    for texture in mesh.textures:
        image = texture.image
        if image is None or image.array is None:
            continue
        arr = image.array
        if flatten_image(image):
            dropped.append(arr)
            flattened += 1
    if dropped:
        mesh.transferables = [t for t in mesh.transferables
                              if not any(t is d for d in dropped)]
        logger.debug(f"Flattened {flattened} uniform textures")
    return flattened
