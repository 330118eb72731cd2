"""ONNX Runtime implementations of the network contracts."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import jax.numpy as jnp
import numpy as np
import onnxruntime as ort
from jaxtyping import Array

from sdiffuse.errors import BackendError, ShapeMismatchError

logger = logging.getLogger(__name__)

_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
}


def get_providers(execution_provider: str = "cpu", device_id: int = 0) -> list[Any]:
    """onnxruntime provider list, always ending with the CPU provider."""
    if execution_provider == "cuda":
        return [("CUDAExecutionProvider", {"device_id": device_id}), "CPUExecutionProvider"]
    if execution_provider == "directml":
        return [("DmlExecutionProvider", {"device_id": device_id}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def get_session_options(execution_provider: str = "cpu") -> ort.SessionOptions:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    if execution_provider == "directml":
        # DirectML does not support memory patterns or parallel execution
        options.enable_mem_pattern = False
        options.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    return options


class OnnxModel:
    """Owns one inference session; released by :meth:`close` or on context exit."""

    name = "onnx_model"

    def __init__(self, path: str | Path, execution_provider: str = "cpu", device_id: int = 0):
        self.path = Path(path).expanduser()
        logger.info("Loading %s from %s (%s:%d)", self.name, self.path, execution_provider, device_id)
        try:
            self._session = ort.InferenceSession(
                str(self.path),
                sess_options=get_session_options(execution_provider),
                providers=get_providers(execution_provider, device_id),
            )
        except Exception as e:
            raise BackendError(self.name, e) from e
        self._input_types = {i.name: i.type for i in self._session.get_inputs()}

    def input_dtype(self, name: str, default: Any = np.float32) -> Any:
        return _ORT_DTYPES.get(self._input_types.get(name, ""), default)

    def run(self, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        if self._session is None:
            raise BackendError(self.name, RuntimeError("session has been released"))
        try:
            return self._session.run(None, feeds)
        except Exception as e:
            raise BackendError(self.name, e) from e

    def close(self) -> None:
        if self._session is not None:
            logger.info("Releasing %s", self.name)
            self._session = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class OnnxTextEncoder(OnnxModel):
    name = "text_encoder"

    def __init__(self, path: str | Path, max_length: int = 77, **kwargs):
        super().__init__(path, **kwargs)
        self.max_length = max_length

    def encode(self, input_ids: Sequence[int]) -> Array:
        if len(input_ids) != self.max_length:
            raise ShapeMismatchError(self.name, (self.max_length,), (len(input_ids),))
        ids = np.asarray([input_ids], dtype=self.input_dtype("input_ids", np.int32))
        last_hidden_state = self.run({"input_ids": ids})[0]
        return jnp.asarray(last_hidden_state[0], dtype=jnp.float32)


class OnnxNoisePredictor(OnnxModel):
    name = "unet"

    def predict(self, sample: Array, encoder_hidden_states: Array, timestep: int) -> Array:
        feeds = {
            "encoder_hidden_states": np.asarray(
                encoder_hidden_states, dtype=self.input_dtype("encoder_hidden_states")
            ),
            "sample": np.asarray(sample, dtype=self.input_dtype("sample")),
            "timestep": np.asarray([timestep], dtype=self.input_dtype("timestep", np.int64)),
        }
        return jnp.asarray(self.run(feeds)[0], dtype=jnp.float32)


class OnnxDecoder(OnnxModel):
    name = "vae_decoder"

    def decode(self, latent: Array) -> Array:
        feeds = {"latent_sample": np.asarray(latent, dtype=self.input_dtype("latent_sample"))}
        return jnp.asarray(self.run(feeds)[0], dtype=jnp.float32)


class OnnxSafetyClassifier(OnnxModel):
    name = "safety_checker"

    def classify(self, clip_input: Array, images: Array) -> bool:
        feeds = {
            "clip_input": np.asarray(clip_input, dtype=self.input_dtype("clip_input")),
            "images": np.asarray(images, dtype=self.input_dtype("images")),
        }
        # last output holds the per-image nsfw flags
        has_nsfw_concepts = self.run(feeds)[-1]
        return bool(np.asarray(has_nsfw_concepts).ravel()[0])
