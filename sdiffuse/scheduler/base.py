# Copyright 2025 Jacopo Iollo <jacopo.iollo@inria.fr>, Geoffroy Oudoumanessah <geoffroy.oudoumanessah@inria.fr>
# Licensed under the Apache License, Version 2.0 (the "License");
# http://www.apache.org/licenses/LICENSE-2.0
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array

from sdiffuse.errors import ShapeMismatchError

__all__ = ["DiscreteScheduler", "training_sigmas"]


def training_sigmas(
    num_train_timesteps: int,
    beta_start: float,
    beta_end: float,
    beta_schedule: str = "scaled_linear",
) -> np.ndarray:
    r"""Noise levels of the training schedule.

    .. math::
        \sigma_t = \sqrt{(1 - \bar\alpha_t) / \bar\alpha_t}, \quad \bar\alpha_t = \prod_{s \le t} (1 - \beta_s)

    Args:
        num_train_timesteps: Length of the training schedule
        beta_start: First beta value
        beta_end: Last beta value
        beta_schedule: ``linear`` or ``scaled_linear`` (linear in sqrt(beta))

    Returns:
        Array of shape (num_train_timesteps,) in float64
    """
    if beta_schedule == "scaled_linear":
        betas = np.linspace(beta_start**0.5, beta_end**0.5, num_train_timesteps, dtype=np.float64) ** 2
    elif beta_schedule == "linear":
        betas = np.linspace(beta_start, beta_end, num_train_timesteps, dtype=np.float64)
    else:
        raise ValueError(f"Unknown beta schedule '{beta_schedule}'. Available: linear, scaled_linear")
    alphas_cumprod = np.cumprod(1.0 - betas)
    return np.sqrt((1 - alphas_cumprod) / alphas_cumprod)


@dataclass
class DiscreteScheduler(ABC):
    """Base class for discrete-timestep schedulers driven by the denoising loop.

    Holds the per-generation sigma table; :meth:`set_timesteps` resets all state so
    one instance can serve consecutive generations.

    Attributes:
        num_train_timesteps: Length of the training noise schedule
        beta_start: First beta of the training schedule
        beta_end: Last beta of the training schedule
        beta_schedule: ``linear`` or ``scaled_linear``
    """

    num_train_timesteps: int = 1000
    beta_start: float = 0.00085
    beta_end: float = 0.012
    beta_schedule: str = "scaled_linear"

    timesteps: List[int] = field(default_factory=list, init=False, repr=False)
    sigmas: Array = field(default=None, init=False, repr=False)

    def set_timesteps(self, num_inference_steps: int) -> List[int]:
        """Compute the reverse-ordered timesteps and their sigmas.

        Args:
            num_inference_steps: Number of denoising steps

        Returns:
            Strictly decreasing list of integer timesteps of length ``num_inference_steps``
        """
        if not 1 <= num_inference_steps <= self.num_train_timesteps:
            raise ValueError(
                f"num_inference_steps must be in [1, {self.num_train_timesteps}], got {num_inference_steps}"
            )
        train_sigmas = training_sigmas(self.num_train_timesteps, self.beta_start, self.beta_end, self.beta_schedule)
        timesteps = np.linspace(0, self.num_train_timesteps - 1, num_inference_steps, dtype=np.float64)[::-1]
        sigmas = np.interp(timesteps, np.arange(self.num_train_timesteps), train_sigmas)
        sigmas = np.concatenate([sigmas, [0.0]])

        self.timesteps = [int(t) for t in timesteps]
        self.sigmas = jnp.asarray(sigmas, dtype=jnp.float32)
        self._reset()
        return list(self.timesteps)

    def init_noise_sigma(self) -> float:
        self._check_ready()
        return float(jnp.max(self.sigmas))

    def scale_input(self, sample: Array, timestep: int) -> Array:
        r"""Scale the model input: :math:`x / \sqrt{\sigma^2 + 1}`."""
        sigma = self.sigmas[self.step_index(timestep)]
        return sample / jnp.sqrt(sigma * sigma + 1)

    def step_index(self, timestep: int) -> int:
        self._check_ready()
        try:
            return self.timesteps.index(int(timestep))
        except ValueError:
            raise ValueError(f"Timestep {timestep} is not part of the current schedule.") from None

    def step(self, model_output: Array, timestep: int, sample: Array) -> Array:
        """Advance ``sample`` by one timestep given the guided noise prediction.

        Args:
            model_output: Guided noise prediction, same shape as ``sample``
            timestep: Current timestep, as returned by :meth:`set_timesteps`
            sample: Latent before this step

        Returns:
            Latent for the next timestep
        """
        if model_output.shape != sample.shape:
            raise ShapeMismatchError("scheduler", sample.shape, model_output.shape)
        return self._step(model_output, self.step_index(timestep), sample)

    @abstractmethod
    def _step(self, model_output: Array, step_index: int, sample: Array) -> Array:
        pass

    def _reset(self) -> None:
        pass

    def _check_ready(self) -> None:
        if not self.timesteps:
            raise RuntimeError("set_timesteps() has not been called.")

    def _predict_derivative(self, model_output: Array, step_index: int, sample: Array) -> Array:
        # epsilon prediction: x0 = x - sigma * eps, d = (x - x0) / sigma
        sigma = self.sigmas[step_index]
        pred_original_sample = sample - sigma * model_output
        return (sample - pred_original_sample) / sigma
