"""Classifier-free guidance on batched noise predictions.

Batch index 0 is always the unconditional (negative prompt) branch and
batch index 1 the conditional (positive prompt) branch.
"""

from typing import Tuple

import jax.numpy as jnp
from jaxtyping import Array

from sdiffuse.errors import ShapeMismatchError

UNCOND_INDEX = 0
COND_INDEX = 1


def duplicate_latent(latent: Array) -> Array:
    """torch.cat([latents] * 2): (1, C, h, w) -> (2, C, h, w)."""
    return jnp.concatenate([latent, latent], axis=0)


def split_noise_prediction(noise_pred: Array) -> Tuple[Array, Array]:
    """Split a (2, C, h, w) prediction into (uncond, cond), each (1, C, h, w)."""
    if noise_pred.ndim != 4 or noise_pred.shape[0] != 2:
        raise ShapeMismatchError("noise_predictor", (2, *noise_pred.shape[1:]), noise_pred.shape)
    return noise_pred[UNCOND_INDEX : UNCOND_INDEX + 1], noise_pred[COND_INDEX : COND_INDEX + 1]


def guide(noise_pred_uncond: Array, noise_pred_text: Array, guidance_scale: float) -> Array:
    r"""Blend the two branches.

    .. math::
        \hat\epsilon = \epsilon_u + w (\epsilon_c - \epsilon_u)

    ``w = 0`` returns the unconditional prediction and ``w = 1`` the conditional one.
    """
    if noise_pred_uncond.shape != noise_pred_text.shape:
        raise ShapeMismatchError("guidance", noise_pred_uncond.shape, noise_pred_text.shape)
    # convex form is exact at w = 0 and w = 1
    return (1.0 - guidance_scale) * noise_pred_uncond + guidance_scale * noise_pred_text


def perform_guidance(noise_pred: Array, guidance_scale: float) -> Array:
    noise_pred_uncond, noise_pred_text = split_noise_prediction(noise_pred)
    return guide(noise_pred_uncond, noise_pred_text, guidance_scale)
