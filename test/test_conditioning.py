import json

import jax.numpy as jnp
import pytest

from sdiffuse.conditioning import ClipTokenizer, ConditioningBuilder, blank_tokens, pad_tokens
from sdiffuse.errors import ShapeMismatchError, TokenOverflowError

from conftest import BOS, EMBEDDING_DIM, EOS, MAX_LENGTH


@pytest.fixture
def builder(tokenizer, text_encoder):
    return ConditioningBuilder(tokenizer, text_encoder, max_length=MAX_LENGTH, embedding_dim=EMBEDDING_DIM)


def test_pad_tokens():
    ids = pad_tokens([BOS, 320, 1125, EOS], max_length=MAX_LENGTH, pad_token_id=EOS)
    assert len(ids) == MAX_LENGTH
    assert ids[:4] == [BOS, 320, 1125, EOS]
    assert set(ids[4:]) == {EOS}


def test_pad_tokens_exact_length():
    ids = [BOS] + [1] * (MAX_LENGTH - 2) + [EOS]
    assert pad_tokens(ids, MAX_LENGTH) == ids


def test_pad_tokens_truncates_keeping_end_token():
    ids = [BOS] + list(range(100)) + [EOS]
    padded = pad_tokens(ids, MAX_LENGTH)
    assert len(padded) == MAX_LENGTH
    assert padded[:-1] == ids[: MAX_LENGTH - 1]
    assert padded[-1] == EOS


def test_pad_tokens_overflow_error():
    with pytest.raises(TokenOverflowError) as excinfo:
        pad_tokens([BOS] + list(range(100)) + [EOS], MAX_LENGTH, overflow_policy="error")
    assert excinfo.value.n_tokens == 102
    assert excinfo.value.max_length == MAX_LENGTH


def test_blank_tokens():
    ids = blank_tokens(MAX_LENGTH, BOS, EOS)
    assert len(ids) == MAX_LENGTH
    assert ids[0] == BOS
    assert all(i == EOS for i in ids[1:])


@pytest.mark.parametrize("negative_prompt", [None, ""])
def test_empty_negative_prompt_uses_blank_tokens(builder, text_encoder, negative_prompt):
    builder("a red circle", negative_prompt)
    assert text_encoder.calls[0] == blank_tokens(MAX_LENGTH, BOS, EOS)


def test_batch_order(builder):
    encoder_hidden_states = builder("a red circle", "blurry")
    assert encoder_hidden_states.shape == (2, MAX_LENGTH, EMBEDDING_DIM)
    assert jnp.array_equal(encoder_hidden_states[0], builder.embed("blurry"))
    assert jnp.array_equal(encoder_hidden_states[1], builder.embed("a red circle"))


def test_prompt_is_padded(builder, text_encoder):
    builder("ab")
    prompt_ids = text_encoder.calls[1]
    assert prompt_ids[:4] == [BOS, ord("a"), ord("b"), EOS]
    assert len(prompt_ids) == MAX_LENGTH


def test_long_prompt_with_error_policy(tokenizer, text_encoder):
    builder = ConditioningBuilder(
        tokenizer, text_encoder, max_length=MAX_LENGTH, embedding_dim=EMBEDDING_DIM, overflow_policy="error"
    )
    with pytest.raises(TokenOverflowError):
        builder("x" * 200)


def test_encoder_shape_mismatch(tokenizer, text_encoder):
    builder = ConditioningBuilder(tokenizer, text_encoder, max_length=MAX_LENGTH, embedding_dim=768)
    with pytest.raises(ShapeMismatchError, match="text_encoder"):
        builder("a red circle")


CLIP_VOCAB = {
    "<|startoftext|>": 0,
    "<|endoftext|>": 1,
    "a</w>": 2,
    "r": 3,
    "e": 4,
    "d</w>": 5,
    "re": 6,
    "red</w>": 7,
    "!</w>": 8,
}


def write_clip_files(directory, vocab=CLIP_VOCAB):
    (directory / "vocab.json").write_text(json.dumps(vocab))
    (directory / "merges.txt").write_text("#version: 0.2\nr e\nre d</w>\n")
    return directory


def test_clip_tokenizer_wraps_and_merges(tmp_path):
    tokenizer = ClipTokenizer(write_clip_files(tmp_path))
    assert tokenizer.tokenize("a red!") == [0, 2, 7, 8, 1]


def test_clip_tokenizer_normalizes(tmp_path):
    tokenizer = ClipTokenizer(write_clip_files(tmp_path))
    assert tokenizer.tokenize("A  Red!") == tokenizer.tokenize("a red!")
    assert tokenizer.tokenize("RED\n\ta") == [0, 7, 2, 1]


def test_clip_tokenizer_empty_prompt(tmp_path):
    assert ClipTokenizer(write_clip_files(tmp_path)).tokenize("") == [0, 1]


def test_clip_tokenizer_missing_start_token(tmp_path):
    vocab = {k: v for k, v in CLIP_VOCAB.items() if k != "<|startoftext|>"}
    with pytest.raises(ValueError, match="startoftext"):
        ClipTokenizer(write_clip_files(tmp_path, vocab))


def test_clip_tokenizer_missing_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        ClipTokenizer(tmp_path)


def test_clip_tokenizer_feeds_builder(tmp_path, text_encoder):
    builder = ConditioningBuilder(
        ClipTokenizer(write_clip_files(tmp_path)), text_encoder, max_length=MAX_LENGTH, embedding_dim=EMBEDDING_DIM
    )
    builder("a red!")
    assert text_encoder.calls[1] == [0, 2, 7, 8, 1] + [EOS] * (MAX_LENGTH - 5)
