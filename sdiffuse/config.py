"""Pipeline and per-generation configuration."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from sdiffuse.errors import ConfigurationError

EXECUTION_PROVIDERS = ("cpu", "cuda", "directml")
SCHEDULERS = ("lms", "euler_ancestral")
OVERFLOW_POLICIES = ("truncate", "error")

_PATH_FIELDS = (
    "text_encoder_path",
    "unet_path",
    "vae_decoder_path",
    "safety_model_path",
    "tokenizer_dir",
    "image_output_path",
)


@dataclass
class PipelineConfig:
    """Static description of the models backing a pipeline.

    Args:
        text_encoder_path: ONNX text encoder, ``input_ids`` -> last hidden state
        unet_path: ONNX noise prediction network
        vae_decoder_path: ONNX VAE decoder, ``latent_sample`` -> pixels
        tokenizer_dir: Directory holding the CLIP ``vocab.json`` and ``merges.txt``
        safety_model_path: ONNX safety checker, only needed when safety is enabled
        execution_provider: One of ``cpu``, ``cuda`` or ``directml``
        device_id: Accelerator index for the cuda and directml providers
        scheduler: ``lms`` or ``euler_ancestral``
        image_output_path: Directory receiving timestamped PNGs, ``None`` to skip saving
        overflow_policy: ``truncate`` or ``error`` for prompts longer than ``model_max_length``
    """

    text_encoder_path: Path | None = None
    unet_path: Path | None = None
    vae_decoder_path: Path | None = None
    tokenizer_dir: Path | None = None
    safety_model_path: Path | None = None
    execution_provider: str = "cpu"
    device_id: int = 0
    scheduler: str = "lms"
    image_output_path: Path | None = None

    model_max_length: int = 77
    embedding_dim: int = 768
    latent_channels: int = 4
    vae_scale_factor: int = 8
    vae_scaling_factor: float = 0.18215
    pad_token_id: int = 49407
    bos_token_id: int = 49406
    overflow_policy: str = "truncate"

    def __post_init__(self):
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                setattr(self, name, Path(value))

    @classmethod
    def from_json(cls, path: str | Path, **overrides: Any) -> "PipelineConfig":
        """Load a config file; relative paths resolve against the file's directory."""
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file {path} does not exist.")
        with path.open("r") as f:
            raw = json.load(f)

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")

        for name in _PATH_FIELDS:
            value = raw.get(name)
            if value is not None:
                candidate = Path(value).expanduser()
                raw[name] = candidate if candidate.is_absolute() else (path.parent / candidate).resolve()

        raw.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**raw)

    def validate(self, safety_enabled: bool = False) -> None:
        required = {
            "text_encoder_path": self.text_encoder_path,
            "unet_path": self.unet_path,
            "vae_decoder_path": self.vae_decoder_path,
        }
        if safety_enabled:
            required["safety_model_path"] = self.safety_model_path
        for name, value in required.items():
            if value is None:
                raise ConfigurationError(f"Missing required model path `{name}`.")
            if not value.is_file():
                raise ConfigurationError(f"Model file for `{name}` not found: {value}")

        if self.tokenizer_dir is None:
            raise ConfigurationError("Missing required `tokenizer_dir`.")
        for filename in ("vocab.json", "merges.txt"):
            if not (self.tokenizer_dir / filename).is_file():
                raise ConfigurationError(f"Tokenizer file {filename} missing in {self.tokenizer_dir}")

        if self.execution_provider not in EXECUTION_PROVIDERS:
            raise ConfigurationError(
                f"Unknown execution provider '{self.execution_provider}'. Available: {', '.join(EXECUTION_PROVIDERS)}"
            )
        if self.scheduler not in SCHEDULERS:
            raise ConfigurationError(f"Unknown scheduler '{self.scheduler}'. Available: {', '.join(SCHEDULERS)}")
        if self.overflow_policy not in OVERFLOW_POLICIES:
            raise ConfigurationError(
                f"Unknown overflow policy '{self.overflow_policy}'. Available: {', '.join(OVERFLOW_POLICIES)}"
            )
        for name in ("model_max_length", "embedding_dim", "latent_channels", "vae_scale_factor"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"`{name}` must be positive.")
        if self.vae_scaling_factor == 0.0:
            raise ConfigurationError("`vae_scaling_factor` must be non-zero.")


@dataclass
class GenerationConfig:
    """Per-call generation settings.

    Args:
        height: Output height in pixels, divisible by the VAE scale factor
        width: Output width in pixels, divisible by the VAE scale factor
        num_inference_steps: Number of scheduler timesteps
        guidance_scale: Classifier-free guidance scale
        seed: Latent seed; a random one is drawn when ``None``
        safety_enabled: Run the safety classifier on the decoded image
    """

    height: int = 512
    width: int = 512
    num_inference_steps: int = 15
    guidance_scale: float = 7.5
    seed: int | None = None
    safety_enabled: bool = False

    def validate(self, vae_scale_factor: int = 8) -> None:
        if self.height <= 0 or self.width <= 0:
            raise ConfigurationError("Height and width must be positive.")
        if self.height % vae_scale_factor or self.width % vae_scale_factor:
            raise ConfigurationError(f"Height and width must be divisible by {vae_scale_factor}.")
        if self.num_inference_steps < 1:
            raise ConfigurationError("`num_inference_steps` must be at least 1.")
        if self.guidance_scale < 0:
            raise ConfigurationError("`guidance_scale` must be non-negative.")
