from typing import List, Sequence

import jax.numpy as jnp
import matplotlib.pyplot as plt
import pytest

from sdiffuse.config import PipelineConfig
from sdiffuse.pipeline import StableDiffusionPipeline

MAX_LENGTH = 77
EMBEDDING_DIM = 16
BOS, EOS = 49406, 49407


def pytest_addoption(parser):
    parser.addoption(
        "--plot",
        action="store_true",
        default=False,
        help="Generate plots during testing",
    )
    parser.addoption(
        "--plot-wait",
        action="store_true",
        default=False,
        help="Wait for manual plot closure instead of auto-closing after 2s",
    )


@pytest.fixture
def plot_if_enabled(request):
    def _plot_if_enabled(plot_func):
        if request.config.getoption("--plot"):
            fig = plot_func()
            if request.config.getoption("--plot-wait"):
                plt.show()
            else:
                plt.show(block=False)
                plt.pause(1)
                plt.close()
        else:
            plt.close("all")

    return _plot_if_enabled


class FakeTokenizer:
    """One id per character, wrapped in start/end tokens."""

    def tokenize(self, text: str) -> List[int]:
        return [BOS] + [ord(c) % 1000 for c in text] + [EOS]


class FakeTextEncoder:
    """Embedding row i is ids[i] / 1000 broadcast over the hidden width."""

    def __init__(self, embedding_dim: int = EMBEDDING_DIM):
        self.embedding_dim = embedding_dim
        self.calls = []

    def encode(self, input_ids: Sequence[int]) -> jnp.ndarray:
        self.calls.append(list(input_ids))
        ids = jnp.asarray(input_ids, dtype=jnp.float32) / 1000.0
        return jnp.tile(ids[:, None], (1, self.embedding_dim))


class FakeNoisePredictor:
    """Noise = sample + mean of the matching conditioning row / 100."""

    def __init__(self):
        self.timesteps = []
        self.samples = []

    def predict(self, sample, encoder_hidden_states, timestep):
        self.timesteps.append(timestep)
        self.samples.append(sample)
        bias = jnp.mean(encoder_hidden_states, axis=(1, 2))[:, None, None, None]
        return sample + bias / 100.0


class FakeDecoder:
    """Nearest-neighbour upsampling of the first three latent channels."""

    def __init__(self, vae_scale_factor: int = 8, vae_scaling_factor: float = 0.18215):
        self.vae_scale_factor = vae_scale_factor
        self.vae_scaling_factor = vae_scaling_factor
        self.latents = []

    def decode(self, latent):
        self.latents.append(latent)
        pixels = latent[:, :3] * self.vae_scaling_factor
        pixels = jnp.repeat(jnp.repeat(pixels, self.vae_scale_factor, axis=2), self.vae_scale_factor, axis=3)
        return jnp.tanh(pixels)


class FakeSafetyClassifier:
    def __init__(self, is_nsfw: bool):
        self.is_nsfw = is_nsfw
        self.inputs = []

    def classify(self, clip_input, images):
        self.inputs.append((clip_input, images))
        return self.is_nsfw


@pytest.fixture
def pipeline_config():
    return PipelineConfig(model_max_length=MAX_LENGTH, embedding_dim=EMBEDDING_DIM)


@pytest.fixture
def text_encoder():
    return FakeTextEncoder()


@pytest.fixture
def noise_predictor():
    return FakeNoisePredictor()


@pytest.fixture
def decoder():
    return FakeDecoder()


@pytest.fixture
def make_pipeline(pipeline_config, text_encoder, noise_predictor, decoder):
    def _make_pipeline(safety_classifier=None, **kwargs):
        return StableDiffusionPipeline(
            FakeTokenizer(),
            kwargs.pop("text_encoder", text_encoder),
            kwargs.pop("noise_predictor", noise_predictor),
            kwargs.pop("decoder", decoder),
            safety_classifier=safety_classifier,
            config=kwargs.pop("config", pipeline_config),
            **kwargs,
        )

    return _make_pipeline


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def safety_classifier_factory():
    return FakeSafetyClassifier
