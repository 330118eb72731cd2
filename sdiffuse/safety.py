"""Safety classifier preprocessing and verdict."""

import logging
from dataclasses import dataclass
from typing import NamedTuple, Tuple

import jax.numpy as jnp
import numpy as np
from einops import rearrange
from jaxtyping import Array
from PIL import Image, ImageOps

from sdiffuse.errors import ShapeMismatchError
from sdiffuse.image import quantize
from sdiffuse.networks import SafetyClassifier

logger = logging.getLogger(__name__)

CLIP_MEAN: Tuple[float, float, float] = (0.485, 0.456, 0.406)
CLIP_STD: Tuple[float, float, float] = (0.229, 0.224, 0.225)


class SafetyInputs(NamedTuple):
    """Intermediate tensors of the safety preprocessing.

    Attributes:
        image: (H, W, 3) uint8 image at generation resolution
        clip_input: (1, 3, S, S) normalized, channel first
        images: (1, S, S, 3) same values, channel last
    """

    image: Array
    clip_input: Array
    images: Array


def resize_crop(image: Array, size: int) -> Array:
    """Scale to cover ``size`` x ``size`` and center crop, bicubic."""
    pil_image = Image.fromarray(np.asarray(image))
    fitted = ImageOps.fit(pil_image, (size, size), method=Image.Resampling.BICUBIC)
    return jnp.asarray(np.asarray(fitted))


def normalize(image: Array, mean=CLIP_MEAN, std=CLIP_STD) -> Array:
    """(H, W, 3) uint8 -> (H, W, 3) float, ``(x / 255 - mean_c) / std_c``."""
    values = jnp.asarray(image, dtype=jnp.float32) / 255.0
    return (values - jnp.asarray(mean, dtype=jnp.float32)) / jnp.asarray(std, dtype=jnp.float32)


def preprocess(pixels: Array, input_size: int = 224) -> SafetyInputs:
    image = quantize(pixels)
    normalized = normalize(resize_crop(image, input_size))
    clip_input = rearrange(normalized, "h w c -> 1 c h w")
    images = rearrange(clip_input, "b c h w -> b h w c")
    return SafetyInputs(image, clip_input, images)


@dataclass
class SafetyChecker:
    """Runs the classifier on a decoded image; ``True`` means safe.

    Attributes:
        classifier: Network reporting whether an image is NSFW
        input_size: Square input side of the classifier
    """

    classifier: SafetyClassifier
    input_size: int = 224

    def is_image_safe(self, pixels: Array) -> bool:
        inputs = preprocess(pixels, self.input_size)
        expected = (1, 3, self.input_size, self.input_size)
        if inputs.clip_input.shape != expected:
            raise ShapeMismatchError("safety_checker", expected, inputs.clip_input.shape)
        is_nsfw = bool(self.classifier.classify(inputs.clip_input, inputs.images))
        logger.info("Safety checker verdict: %s", "unsafe" if is_nsfw else "safe")
        return not is_nsfw
