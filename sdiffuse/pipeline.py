"""Text-to-image pipeline: conditioning, guided denoising, decoding and safety gating."""

from __future__ import annotations

import logging
import random
import time
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import jax.numpy as jnp
from jaxtyping import Array
from PIL import Image

from sdiffuse.backend import OnnxDecoder, OnnxNoisePredictor, OnnxSafetyClassifier, OnnxTextEncoder
from sdiffuse.conditioning import ClipTokenizer, ConditioningBuilder
from sdiffuse.config import GenerationConfig, PipelineConfig
from sdiffuse.denoiser import Denoiser
from sdiffuse.errors import BackendError, ConfigurationError
from sdiffuse.image import check_pixels, save_image, to_pil
from sdiffuse.networks import Decoder, NoisePredictor, SafetyClassifier, TextEncoder, Tokenizer
from sdiffuse.safety import SafetyChecker
from sdiffuse.scheduler import DiscreteScheduler, get_scheduler

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """Outcome of one generation.

    A safety rejection is a normal outcome: ``image`` is ``None`` and ``is_safe`` is ``False``.
    """

    image: Image.Image | None
    seed: int
    is_safe: bool = True
    output_path: Path | None = None

    @property
    def rejected(self) -> bool:
        return not self.is_safe


class StableDiffusionPipeline:
    """Latent diffusion sampler over four opaque networks.

    Networks passed in are used as-is; those created by :meth:`from_config` are owned
    by the pipeline and released by :meth:`close`.
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        text_encoder: TextEncoder,
        noise_predictor: NoisePredictor,
        decoder: Decoder,
        safety_classifier: SafetyClassifier | None = None,
        config: PipelineConfig | None = None,
        scheduler_factory: Callable[[int], DiscreteScheduler] | None = None,
        resources: ExitStack | None = None,
    ):
        self.config = config or PipelineConfig()
        self.conditioning = ConditioningBuilder(
            tokenizer=tokenizer,
            text_encoder=text_encoder,
            max_length=self.config.model_max_length,
            embedding_dim=self.config.embedding_dim,
            bos_token_id=self.config.bos_token_id,
            pad_token_id=self.config.pad_token_id,
            overflow_policy=self.config.overflow_policy,
        )
        self.noise_predictor = noise_predictor
        self.decoder = decoder
        self.safety_checker = SafetyChecker(safety_classifier) if safety_classifier is not None else None
        self.scheduler_factory = scheduler_factory or (lambda seed: get_scheduler(self.config.scheduler, seed=seed))
        self._resources = resources or ExitStack()

    @classmethod
    def from_config(cls, config: PipelineConfig, safety_enabled: bool = False) -> "StableDiffusionPipeline":
        """Validate ``config`` and open one ONNX session per network."""
        config.validate(safety_enabled=safety_enabled)
        session_kwargs = dict(execution_provider=config.execution_provider, device_id=config.device_id)
        with ExitStack() as stack:
            tokenizer = ClipTokenizer(config.tokenizer_dir)
            text_encoder = stack.enter_context(
                OnnxTextEncoder(config.text_encoder_path, max_length=config.model_max_length, **session_kwargs)
            )
            noise_predictor = stack.enter_context(OnnxNoisePredictor(config.unet_path, **session_kwargs))
            decoder = stack.enter_context(OnnxDecoder(config.vae_decoder_path, **session_kwargs))
            safety_classifier = None
            if safety_enabled:
                safety_classifier = stack.enter_context(OnnxSafetyClassifier(config.safety_model_path, **session_kwargs))
            # the pipeline takes ownership of every opened session
            return cls(
                tokenizer,
                text_encoder,
                noise_predictor,
                decoder,
                safety_classifier=safety_classifier,
                config=config,
                resources=stack.pop_all(),
            )

    def close(self) -> None:
        self._resources.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def encode_prompt(self, prompt: str, negative_prompt: str | None = None) -> Array:
        return self.conditioning(prompt, negative_prompt)

    def decode_latents(self, latent: Array, height: int, width: int) -> Array:
        pixels = self.decoder.decode(latent / self.config.vae_scaling_factor)
        check_pixels(pixels, height, width)
        if not bool(jnp.all(jnp.isfinite(pixels))):
            raise BackendError("vae_decoder", ValueError("decoded pixels contain NaN or Inf"))
        return pixels

    def generate(
        self,
        prompt: str,
        negative_prompt: str | None = None,
        generation: GenerationConfig | None = None,
        output_path: str | Path | None = None,
        cancel_event: Any | None = None,
        progress: bool = True,
    ) -> GenerationResult:
        """Generate one image.

        Args:
            prompt: Positive prompt
            negative_prompt: Negative prompt; empty or ``None`` uses the blank token sequence
            generation: Size, steps, guidance scale, seed and safety switch
            output_path: PNG file or directory; defaults to ``config.image_output_path``
            cancel_event: Object with ``is_set()`` polled between timesteps
            progress: Display a progress bar over timesteps

        Returns:
            GenerationResult; ``rejected`` is set when the safety checker flagged the image
        """
        generation = generation or GenerationConfig()
        generation.validate(self.config.vae_scale_factor)
        if generation.safety_enabled and self.safety_checker is None:
            raise ConfigurationError("Safety is enabled but the pipeline has no safety classifier.")

        seed = generation.seed if generation.seed is not None else random.randrange(2**31)
        logger.info("Prompt: %s", prompt)
        logger.info("NegativePrompt: %s", negative_prompt)
        logger.info("Seed: %d", seed)
        start = time.perf_counter()

        encoder_hidden_states = self.encode_prompt(prompt, negative_prompt)

        scheduler = self.scheduler_factory(seed)
        timesteps = scheduler.set_timesteps(generation.num_inference_steps)
        denoiser = Denoiser(scheduler, self.noise_predictor, generation.guidance_scale)
        state = denoiser.init(
            generation.height, generation.width, seed, self.config.latent_channels, self.config.vae_scale_factor
        )
        _, latent = denoiser.generate(state, timesteps, encoder_hidden_states, cancel_event, progress)

        pixels = self.decode_latents(latent, generation.height, generation.width)

        if generation.safety_enabled and not self.safety_checker.is_image_safe(pixels):
            logger.warning("Resulting image is NSFW, no image produced.")
            return GenerationResult(image=None, seed=seed, is_safe=False)

        image = to_pil(pixels)
        output_path = output_path if output_path is not None else self.config.image_output_path
        saved_path = save_image(image, output_path) if output_path is not None else None
        logger.info("Time taken: %.0fms", (time.perf_counter() - start) * 1000)
        return GenerationResult(image=image, seed=seed, is_safe=True, output_path=saved_path)
