"""Exception hierarchy for the sampling pipeline.

A safety rejection is not an error: it is reported through
:class:`sdiffuse.pipeline.GenerationResult`.
"""

from typing import Optional, Tuple


class SdiffuseError(Exception):
    """Base class for every error raised by sdiffuse."""


class ConfigurationError(SdiffuseError, ValueError):
    """Invalid model paths or dimensions, detected before inference."""


class ShapeMismatchError(SdiffuseError, ValueError):
    """An adapter produced or received a tensor of unexpected shape."""

    def __init__(self, adapter: str, expected: Tuple[int, ...], actual: Tuple[int, ...]):
        self.adapter = adapter
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(f"{adapter}: expected shape {self.expected}, got {self.actual}")


class BackendError(SdiffuseError, RuntimeError):
    """The compute backend failed while running an adapter."""

    def __init__(self, adapter: str, cause: Optional[BaseException] = None):
        self.adapter = adapter
        message = f"{adapter}: backend failure"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class TokenOverflowError(SdiffuseError, ValueError):
    """Prompt tokenizes to more ids than the text encoder accepts."""

    def __init__(self, n_tokens: int, max_length: int):
        self.n_tokens = n_tokens
        self.max_length = max_length
        super().__init__(f"Prompt has {n_tokens} tokens, model max length is {max_length}")


class GenerationCancelled(SdiffuseError):
    """Cancellation was requested between two timesteps."""

    def __init__(self, step: int):
        self.step = step
        super().__init__(f"Generation cancelled before step {step}")
