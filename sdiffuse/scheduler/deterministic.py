from dataclasses import dataclass, field
from typing import List

import numpy as np
from jaxtyping import Array

from sdiffuse.scheduler.base import DiscreteScheduler

__all__ = ["LMSDiscreteScheduler", "lms_coefficient"]


def lms_coefficient(sigmas: np.ndarray, order: int, step_index: int, current_order: int) -> float:
    r"""Integral of the Lagrange basis polynomial between two consecutive sigmas.

    .. math::
        c_j = \int_{\sigma_i}^{\sigma_{i+1}} \prod_{k \ne j} \frac{\tau - \sigma_{i-k}}{\sigma_{i-j} - \sigma_{i-k}} d\tau

    The polynomial is integrated exactly.

    Args:
        sigmas: Inference sigma table including the trailing zero
        order: Number of past derivatives in use
        step_index: Index of the current sigma
        current_order: Index ``j`` of the basis polynomial

    Returns:
        Coefficient multiplying the ``current_order``-th most recent derivative
    """
    basis = np.polynomial.Polynomial([1.0])
    for k in range(order):
        if k == current_order:
            continue
        denominator = sigmas[step_index - current_order] - sigmas[step_index - k]
        basis = basis * np.polynomial.Polynomial([-sigmas[step_index - k], 1.0]) / denominator
    antiderivative = basis.integ()
    return float(antiderivative(sigmas[step_index + 1]) - antiderivative(sigmas[step_index]))


@dataclass
class LMSDiscreteScheduler(DiscreteScheduler):
    """Linear multistep scheduler for discrete-time diffusion.

    Keeps the last ``order`` derivatives and combines them with LMS coefficients:

    x_{i+1} = x_i + Σ_j c_j d_{i-j}

    Attributes:
        order: Maximum number of past derivatives (default: 4)
    """

    order: int = 4
    derivatives: List[Array] = field(default_factory=list, init=False, repr=False)

    def _reset(self) -> None:
        self.derivatives = []

    def _step(self, model_output: Array, step_index: int, sample: Array) -> Array:
        derivative = self._predict_derivative(model_output, step_index, sample)
        self.derivatives.append(derivative)
        if len(self.derivatives) > self.order:
            self.derivatives.pop(0)

        order = min(step_index + 1, self.order)
        sigmas = np.asarray(self.sigmas, dtype=np.float64)
        coefficients = [lms_coefficient(sigmas, order, step_index, j) for j in range(order)]

        prev_sample = sample
        for coeff, past_derivative in zip(coefficients, reversed(self.derivatives)):
            prev_sample = prev_sample + coeff * past_derivative
        return prev_sample
