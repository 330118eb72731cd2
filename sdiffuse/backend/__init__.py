"""Compute backends for the pipeline networks."""

from .onnx import (
    OnnxDecoder,
    OnnxModel,
    OnnxNoisePredictor,
    OnnxSafetyClassifier,
    OnnxTextEncoder,
    get_providers,
    get_session_options,
)

__all__ = [
    "OnnxDecoder",
    "OnnxModel",
    "OnnxNoisePredictor",
    "OnnxSafetyClassifier",
    "OnnxTextEncoder",
    "get_providers",
    "get_session_options",
]
