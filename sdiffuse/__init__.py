"""Latent diffusion text-to-image sampling."""

from sdiffuse.config import GenerationConfig, PipelineConfig
from sdiffuse.errors import (
    BackendError,
    ConfigurationError,
    GenerationCancelled,
    SdiffuseError,
    ShapeMismatchError,
    TokenOverflowError,
)
from sdiffuse.pipeline import GenerationResult, StableDiffusionPipeline

__all__ = [
    "BackendError",
    "ConfigurationError",
    "GenerationCancelled",
    "GenerationConfig",
    "GenerationResult",
    "PipelineConfig",
    "SdiffuseError",
    "ShapeMismatchError",
    "StableDiffusionPipeline",
    "TokenOverflowError",
]
