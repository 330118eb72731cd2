# Copyright 2025 Jacopo Iollo <jacopo.iollo@inria.fr>, Geoffroy Oudoumanessah <geoffroy.oudoumanessah@inria.fr>
# Licensed under the Apache License, Version 2.0 (the "License");
# http://www.apache.org/licenses/LICENSE-2.0
from typing import Tuple

import jax
import jax.numpy as jnp
from jaxtyping import Array, PRNGKeyArray


def box_muller(rng_key: PRNGKeyArray, shape: Tuple[int, ...]) -> Array:
    r"""Standard normal samples from two independent uniform draws per element.

    .. math::
        z = \sqrt{-2 \log u_1} \cos(2 \pi u_2)

    Args:
        rng_key: JAX random number generator key
        shape: Output shape

    Returns:
        Array of i.i.d. N(0, 1) samples
    """
    key_radius, key_theta = jax.random.split(rng_key)
    # u1 in (0, 1] keeps the log finite
    u1 = 1.0 - jax.random.uniform(key_radius, shape, dtype=jnp.float32)
    u2 = jax.random.uniform(key_theta, shape, dtype=jnp.float32)
    radius = jnp.sqrt(-2.0 * jnp.log(u1))
    theta = 2.0 * jnp.pi * u2
    return radius * jnp.cos(theta)


def latent_shape(height: int, width: int, channels: int = 4, vae_scale_factor: int = 8) -> Tuple[int, int, int, int]:
    return (1, channels, height // vae_scale_factor, width // vae_scale_factor)


def generate_latent_sample(
    height: int,
    width: int,
    seed: int,
    init_noise_sigma: float,
    channels: int = 4,
    vae_scale_factor: int = 8,
) -> Array:
    """Seeded initial latent of shape (1, C, H/f, W/f) scaled by the scheduler's initial noise sigma.

    The same seed, size and sigma always give the same bytes.
    """
    rng_key = jax.random.PRNGKey(seed)
    noise = box_muller(rng_key, latent_shape(height, width, channels, vae_scale_factor))
    return noise * jnp.float32(init_noise_sigma)
