"""Tensor-in/tensor-out contracts of the networks the pipeline drives.

Each network is opaque: the pipeline only relies on the shapes below.
"""

from typing import List, Protocol, Sequence

from jaxtyping import Array


class Tokenizer(Protocol):
    def tokenize(self, text: str) -> List[int]:
        """Variable-length ids, start and end-of-text tokens included."""
        ...


class TextEncoder(Protocol):
    def encode(self, input_ids: Sequence[int]) -> Array:
        """(L,) ids -> (L, D) last hidden state."""
        ...


class NoisePredictor(Protocol):
    def predict(self, sample: Array, encoder_hidden_states: Array, timestep: int) -> Array:
        """(2, C, h, w) latent, (2, L, D) conditioning -> (2, C, h, w) noise."""
        ...


class Decoder(Protocol):
    def decode(self, latent: Array) -> Array:
        """(1, C, h, w) latent -> (1, 3, H, W) pixels in about [-1, 1]."""
        ...


class SafetyClassifier(Protocol):
    def classify(self, clip_input: Array, images: Array) -> bool:
        """(1, 3, S, S) and (1, S, S, 3) -> True when the image is NSFW."""
        ...
