"""Image input serialization.

The engine only reads images from disk, so every image-bearing request
parameter is written as a PNG into the request's scratch directory.
"""
from __future__ import annotations

import io
import logging
from pathlib import Path

import numpy as np
from PIL import Image

from ..request import ImageInput

logger = logging.getLogger(__name__)


def load_image(value: ImageInput) -> Image.Image:
    """Decode any supported image input into a PIL image."""
    if isinstance(value, Image.Image):
        return value
    if isinstance(value, (bytes, bytearray)):
        image = Image.open(io.BytesIO(value))
        image.load()
        return image
    if isinstance(value, np.ndarray):
        array = value
        if array.dtype != np.uint8:
            # Float arrays are taken as [0, 1]
            if np.issubdtype(array.dtype, np.floating):
                array = np.clip(array * 255.0, 0, 255)
            array = array.astype(np.uint8)
        if array.ndim == 3 and array.shape[2] == 1:
            array = array[:, :, 0]
        return Image.fromarray(array)
    if isinstance(value, (str, Path)):
        with Image.open(value) as image:
            image.load()
            return image.copy()
    raise TypeError(f"Unsupported image input type: {type(value).__name__}")


def save_image_input(value: ImageInput, target: Path, mode: str = "RGB") -> Path:
    """Write ``value`` as a PNG at ``target``.

    Args:
        value: Bytes, path, PIL image or numpy array.
        target: Destination file (parent must exist).
        mode: PIL mode to convert to ("RGB" for images, "L" for masks).

    Returns:
        The written path.
    """
    image = load_image(value)
    if image.mode != mode:
        image = image.convert(mode)
    image.save(target, format="PNG")
    logger.debug("Wrote %s input (%dx%d) to %s", mode, image.width, image.height, target)
    return target
