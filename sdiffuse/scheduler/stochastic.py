from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
from jaxtyping import Array, PRNGKeyArray

from sdiffuse.scheduler.base import DiscreteScheduler

__all__ = ["EulerAncestralDiscreteScheduler"]


@dataclass
class EulerAncestralDiscreteScheduler(DiscreteScheduler):
    r"""Euler ancestral sampler over the discrete sigma table.

    Each step moves deterministically to :math:`\sigma_{down}` and re-injects fresh
    noise of scale :math:`\sigma_{up}`:

    .. math::
        \sigma_{up} = \sqrt{\sigma_{to}^2 (\sigma_{from}^2 - \sigma_{to}^2) / \sigma_{from}^2},
        \quad \sigma_{down} = \sqrt{\sigma_{to}^2 - \sigma_{up}^2}

    Attributes:
        seed: Seed of the ancestral noise; reset with every :meth:`set_timesteps`
    """

    seed: int = 0
    rng_key: PRNGKeyArray = field(default=None, init=False, repr=False)

    def _reset(self) -> None:
        # distinct from the latent's PRNGKey(seed) stream
        self.rng_key = jax.random.fold_in(jax.random.PRNGKey(self.seed), 1)

    def _step(self, model_output: Array, step_index: int, sample: Array) -> Array:
        sigma_from = self.sigmas[step_index]
        sigma_to = self.sigmas[step_index + 1]
        sigma_up = jnp.sqrt(sigma_to**2 * (sigma_from**2 - sigma_to**2) / sigma_from**2)
        sigma_down = jnp.sqrt(jnp.maximum(sigma_to**2 - sigma_up**2, 0.0))

        derivative = self._predict_derivative(model_output, step_index, sample)
        dt = sigma_down - sigma_from
        prev_sample = sample + derivative * dt

        self.rng_key, rng_key_noise = jax.random.split(self.rng_key)
        noise = jax.random.normal(rng_key_noise, sample.shape, dtype=sample.dtype)
        return prev_sample + noise * sigma_up
