# Copyright 2025 Jacopo Iollo <jacopo.iollo@inria.fr>, Geoffroy Oudoumanessah <geoffroy.oudoumanessah@inria.fr>
# Licensed under the Apache License, Version 2.0 (the "License");
# http://www.apache.org/licenses/LICENSE-2.0
import logging
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional, Sequence, Tuple

import jax.numpy as jnp
from jaxtyping import Array
from tqdm import tqdm

from sdiffuse.errors import GenerationCancelled, ShapeMismatchError
from sdiffuse.guidance import duplicate_latent, perform_guidance
from sdiffuse.latent import generate_latent_sample
from sdiffuse.networks import NoisePredictor
from sdiffuse.scheduler.base import DiscreteScheduler

logger = logging.getLogger(__name__)


class DenoiserState(NamedTuple):
    """State threaded through the denoising loop.

    Attributes:
        latent: Current latent, (1, C, h, w)
        step: Index of the next timestep to process
    """

    latent: Array
    step: int = 0


@dataclass
class Denoiser:
    """Classifier-free guided reverse diffusion over a discrete schedule.

    Attributes:
        scheduler: Discrete scheduler owning the timesteps and the update rule
        noise_predictor: Network predicting noise for the (uncond, cond) batch
        guidance_scale: Classifier-free guidance scale
    """

    scheduler: DiscreteScheduler
    noise_predictor: NoisePredictor
    guidance_scale: float

    def init(self, height: int, width: int, seed: int, channels: int = 4, vae_scale_factor: int = 8) -> DenoiserState:
        latent = generate_latent_sample(
            height, width, seed, self.scheduler.init_noise_sigma(), channels, vae_scale_factor
        )
        return DenoiserState(latent)

    def step(self, state: DenoiserState, timestep: int, encoder_hidden_states: Array) -> DenoiserState:
        r"""
        sample p(x_{t-1} | x_t) with guided noise prediction
        """
        latent, step = state
        latent_model_input = self.scheduler.scale_input(duplicate_latent(latent), timestep)

        noise_pred = self.noise_predictor.predict(latent_model_input, encoder_hidden_states, timestep)
        if noise_pred.shape != latent_model_input.shape:
            raise ShapeMismatchError("noise_predictor", latent_model_input.shape, noise_pred.shape)

        guided = perform_guidance(noise_pred, self.guidance_scale)
        latent_next = self.scheduler.step(guided, timestep, latent)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "latents after step %d: min %.4f max %.4f", step, float(jnp.min(latent_next)), float(jnp.max(latent_next))
            )
        return DenoiserState(latent_next, step + 1)

    def generate(
        self,
        state: DenoiserState,
        timesteps: Sequence[int],
        encoder_hidden_states: Array,
        cancel_event: Optional[Any] = None,
        progress: bool = True,
    ) -> Tuple[DenoiserState, Array]:
        """Run every timestep in order.

        Args:
            state: Initial state, usually from :meth:`init`
            timesteps: Schedule returned by ``scheduler.set_timesteps``
            encoder_hidden_states: (2, L, D) conditioning batch
            cancel_event: Object with ``is_set()`` polled before each timestep
            progress: Display a progress bar

        Returns:
            Final state and the final latent
        """
        for timestep in tqdm(timesteps, desc="Denoising", disable=not progress):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(state.step)
            state = self.step(state, timestep, encoder_hidden_states)
        return state, state.latent
