"""Prompt tokenization and the batched conditioning tensor."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence

import jax.numpy as jnp
from jaxtyping import Array
from tokenizers import Regex, Tokenizer, normalizers, pre_tokenizers
from tokenizers.decoders import ByteLevel as ByteLevelDecoder
from tokenizers.models import BPE
from tokenizers.processors import TemplateProcessing

from sdiffuse.errors import ShapeMismatchError, TokenOverflowError
from sdiffuse.networks import TextEncoder
from sdiffuse.networks import Tokenizer as TokenizerProtocol

logger = logging.getLogger(__name__)

_CLIP_PATTERN = r"""'s|'t|'re|'ve|'m|'ll|'d|[\p{L}]+|[\p{N}]|[^\s\p{L}\p{N}]+"""


def pad_tokens(
    input_ids: Sequence[int],
    max_length: int = 77,
    pad_token_id: int = 49407,
    overflow_policy: str = "truncate",
) -> List[int]:
    """Right-pad ``input_ids`` with ``pad_token_id`` up to ``max_length``.

    Longer sequences keep their first ``max_length - 1`` ids followed by the last id
    (the end-of-text token) under ``truncate``, and raise under ``error``.
    """
    ids = list(input_ids)
    if len(ids) > max_length:
        if overflow_policy == "error":
            raise TokenOverflowError(len(ids), max_length)
        logger.warning("Prompt truncated from %d to %d tokens", len(ids), max_length)
        ids = ids[: max_length - 1] + ids[-1:]
    return ids + [pad_token_id] * (max_length - len(ids))


def blank_tokens(max_length: int = 77, bos_token_id: int = 49406, pad_token_id: int = 49407) -> List[int]:
    """Start token followed by padding: the unconditional input."""
    return [bos_token_id] + [pad_token_id] * (max_length - 1)


class ClipTokenizer:
    """CLIP byte-pair tokenizer built from ``vocab.json`` and ``merges.txt``.

    Padding is left to :func:`pad_tokens` so the overflow policy stays in one place.
    """

    def __init__(self, tokenizer_dir: Path):
        self.tokenizer_dir = Path(tokenizer_dir).expanduser()
        vocab_path = self.tokenizer_dir / "vocab.json"
        merges_path = self.tokenizer_dir / "merges.txt"
        if not vocab_path.exists() or not merges_path.exists():
            raise FileNotFoundError(f"CLIP tokenizer requires vocab.json and merges.txt in {self.tokenizer_dir}")

        config_path = self.tokenizer_dir / "tokenizer_config.json"
        clip_cfg: dict[str, Any] = {}
        if config_path.exists():
            with config_path.open("r") as f:
                clip_cfg = json.load(f)

        unk_token = clip_cfg.get("unk_token", "<|endoftext|>")
        model = BPE.from_file(
            str(vocab_path),
            str(merges_path),
            unk_token=unk_token,
            continuing_subword_prefix="",
            end_of_word_suffix="</w>",
            fuse_unk=False,
        )
        tokenizer = Tokenizer(model)
        tokenizer.normalizer = normalizers.Sequence(
            [normalizers.NFC(), normalizers.Replace(Regex(r"\s+"), " "), normalizers.Lowercase()]
        )
        tokenizer.pre_tokenizer = pre_tokenizers.Sequence(
            [
                pre_tokenizers.Split(Regex(_CLIP_PATTERN), behavior="removed", invert=True),
                pre_tokenizers.ByteLevel(add_prefix_space=False),
            ]
        )
        tokenizer.decoder = ByteLevelDecoder()

        bos_token = clip_cfg.get("bos_token", "<|startoftext|>")
        eos_token = clip_cfg.get("eos_token", "<|endoftext|>")
        bos_id = tokenizer.token_to_id(bos_token)
        eos_id = tokenizer.token_to_id(eos_token)
        if bos_id is None or eos_id is None:
            raise ValueError(f"Tokenizer vocabulary lacks {bos_token} or {eos_token}.")

        tokenizer.post_processor = TemplateProcessing(
            single=f"{bos_token} $A {eos_token}",
            special_tokens=[(bos_token, bos_id), (eos_token, eos_id)],
        )
        self._tokenizer = tokenizer

    def tokenize(self, text: str) -> List[int]:
        ids = self._tokenizer.encode(text).ids
        logger.debug("Tokenized %r -> %s", text, ids)
        return ids


@dataclass
class ConditioningBuilder:
    """Builds the (2, L, D) conditioning batch, unconditional at index 0.

    Attributes:
        tokenizer: Prompt tokenizer
        text_encoder: Network mapping (L,) ids to (L, D) embeddings
        max_length: Token sequence length L
        embedding_dim: Hidden width D
        bos_token_id: Start token of the blank sequence
        pad_token_id: Padding id
        overflow_policy: ``truncate`` or ``error``
    """

    tokenizer: TokenizerProtocol
    text_encoder: TextEncoder
    max_length: int = 77
    embedding_dim: int = 768
    bos_token_id: int = 49406
    pad_token_id: int = 49407
    overflow_policy: str = "truncate"

    def tokens(self, prompt: str | None) -> List[int]:
        if not prompt:
            return blank_tokens(self.max_length, self.bos_token_id, self.pad_token_id)
        return pad_tokens(self.tokenizer.tokenize(prompt), self.max_length, self.pad_token_id, self.overflow_policy)

    def embed(self, prompt: str | None) -> Array:
        embedding = self.text_encoder.encode(self.tokens(prompt))
        expected = (self.max_length, self.embedding_dim)
        if embedding.shape != expected:
            raise ShapeMismatchError("text_encoder", expected, embedding.shape)
        return embedding

    def __call__(self, prompt: str, negative_prompt: str | None = None) -> Array:
        uncond_embedding = self.embed(negative_prompt)
        text_embedding = self.embed(prompt)
        return jnp.stack([uncond_embedding, text_embedding], axis=0)
