"""Decoder output -> 8-bit RGB raster."""

from __future__ import annotations

import datetime
import logging
from pathlib import Path

import jax.numpy as jnp
import numpy as np
from einops import rearrange
from jaxtyping import Array
from PIL import Image

from sdiffuse.errors import ShapeMismatchError

logger = logging.getLogger(__name__)


def check_pixels(pixels: Array, height: int | None = None, width: int | None = None) -> None:
    shape = tuple(pixels.shape)
    if len(shape) == 4:
        expected = (1, 3, height or shape[2], width or shape[3])
        if shape == expected:
            return
    else:
        expected = (1, 3, height or -1, width or -1)
    raise ShapeMismatchError("decoder", expected, shape)


def to_unit_range(pixels: Array) -> Array:
    """[-1, 1] -> [0, 1]; out-of-range values saturate."""
    return jnp.clip(pixels / 2 + 0.5, 0.0, 1.0)


def quantize(pixels: Array) -> Array:
    """(1, 3, H, W) float pixels -> (H, W, 3) uint8, ``round(clip(x / 2 + 0.5, 0, 1) * 255)``."""
    check_pixels(pixels)
    unit = to_unit_range(jnp.asarray(pixels, dtype=jnp.float32))
    return rearrange(jnp.round(unit * 255).astype(jnp.uint8), "1 c h w -> h w c")


def to_pil(pixels: Array) -> Image.Image:
    return Image.fromarray(np.asarray(quantize(pixels)))


def image_filename(now: datetime.datetime | None = None) -> str:
    now = now or datetime.datetime.now()
    return f"sd_image_{now.strftime('%Y%m%d%H%M')}.png"


def save_image(image: Image.Image, path: Path) -> Path:
    """Save as PNG; a directory receives a timestamped file name."""
    path = Path(path).expanduser()
    if path.is_dir() or not path.suffix:
        path = path / image_filename()
    path = path.resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(str(path))
    logger.info("Image saved to: %s", path)
    return path
