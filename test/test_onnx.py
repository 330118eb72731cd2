from types import SimpleNamespace

import jax.numpy as jnp
import numpy as np
import onnxruntime as ort
import pytest

from sdiffuse.backend import (
    OnnxDecoder,
    OnnxNoisePredictor,
    OnnxSafetyClassifier,
    OnnxTextEncoder,
    get_providers,
    get_session_options,
)
from sdiffuse.errors import BackendError, ShapeMismatchError


class FakeSession:
    """Records feeds; ``outputs`` maps the feeds to the returned list."""

    def __init__(self, inputs, outputs):
        self.inputs = [SimpleNamespace(name=name, type=dtype) for name, dtype in inputs.items()]
        self.outputs = outputs
        self.feeds = []

    def get_inputs(self):
        return self.inputs

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        return self.outputs(feeds)


@pytest.fixture
def fake_session(monkeypatch):
    def _fake_session(inputs, outputs):
        session = FakeSession(inputs, outputs)
        monkeypatch.setattr(ort, "InferenceSession", lambda *args, **kwargs: session)
        return session

    return _fake_session


def test_cpu_providers():
    assert get_providers("cpu") == ["CPUExecutionProvider"]


@pytest.mark.parametrize("execution_provider, name", [("cuda", "CUDAExecutionProvider"), ("directml", "DmlExecutionProvider")])
def test_accelerator_providers(execution_provider, name):
    providers = get_providers(execution_provider, device_id=1)
    assert providers[0] == (name, {"device_id": 1})
    assert providers[-1] == "CPUExecutionProvider"


def test_directml_session_options():
    options = get_session_options("directml")
    assert not options.enable_mem_pattern
    assert options.execution_mode == ort.ExecutionMode.ORT_SEQUENTIAL
    assert get_session_options("cpu").enable_mem_pattern


def test_missing_model_raises_backend_error(tmp_path):
    with pytest.raises(BackendError, match="unet"):
        OnnxNoisePredictor(tmp_path / "missing.onnx")


def test_text_encoder(fake_session):
    session = fake_session(
        {"input_ids": "tensor(int32)"},
        lambda feeds: [np.ones((1, 77, 768), dtype=np.float32), np.ones((1, 768), dtype=np.float32)],
    )
    encoder = OnnxTextEncoder("text_encoder.onnx", max_length=77)
    embedding = encoder.encode(list(range(77)))
    assert embedding.shape == (77, 768)
    assert session.feeds[0]["input_ids"].dtype == np.int32
    assert session.feeds[0]["input_ids"].shape == (1, 77)
    with pytest.raises(ShapeMismatchError, match="text_encoder"):
        encoder.encode([1, 2, 3])


def test_noise_predictor_feeds(fake_session):
    session = fake_session(
        {"sample": "tensor(float16)", "timestep": "tensor(int64)", "encoder_hidden_states": "tensor(float16)"},
        lambda feeds: [feeds["sample"] * 2],
    )
    predictor = OnnxNoisePredictor("unet.onnx")
    noise_pred = predictor.predict(jnp.ones((2, 4, 8, 8)), jnp.zeros((2, 77, 768)), 999)
    feeds = session.feeds[0]
    assert feeds["sample"].dtype == np.float16
    assert feeds["timestep"].dtype == np.int64
    assert feeds["timestep"].tolist() == [999]
    assert noise_pred.dtype == jnp.float32
    assert jnp.all(noise_pred == 2.0)


def test_decoder(fake_session):
    session = fake_session({"latent_sample": "tensor(float)"}, lambda feeds: [np.zeros((1, 3, 64, 64), np.float32)])
    pixels = OnnxDecoder("vae_decoder.onnx").decode(jnp.zeros((1, 4, 8, 8)))
    assert pixels.shape == (1, 3, 64, 64)
    assert session.feeds[0]["latent_sample"].shape == (1, 4, 8, 8)


@pytest.mark.parametrize("flag", [True, False])
def test_safety_classifier_reads_last_output(fake_session, flag):
    fake_session(
        {"clip_input": "tensor(float)", "images": "tensor(float)"},
        lambda feeds: [feeds["images"], np.array([flag])],
    )
    classifier = OnnxSafetyClassifier("safety_checker.onnx")
    assert classifier.classify(jnp.zeros((1, 3, 224, 224)), jnp.zeros((1, 224, 224, 3))) is flag


def test_run_failure_raises_backend_error(fake_session):
    def fail(feeds):
        raise RuntimeError("invalid dimensions")

    fake_session({"latent_sample": "tensor(float)"}, fail)
    with pytest.raises(BackendError, match="vae_decoder: backend failure: invalid dimensions"):
        OnnxDecoder("vae_decoder.onnx").decode(jnp.zeros((1, 4, 8, 8)))


def test_closed_session(fake_session):
    fake_session({"latent_sample": "tensor(float)"}, lambda feeds: [np.zeros((1, 3, 64, 64), np.float32)])
    with OnnxDecoder("vae_decoder.onnx") as decoder:
        pass
    with pytest.raises(BackendError):
        decoder.decode(jnp.zeros((1, 4, 8, 8)))
