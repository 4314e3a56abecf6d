"""Link functions mapping annotations and parameters to per-variant heritability."""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.special import expit


def softmax_robust(x: np.ndarray) -> np.ndarray:
    """Numerically stable softmax log(1 + exp(x))."""
    x = np.asarray(x, dtype=np.float64)
    return np.maximum(x, 0) + np.log1p(np.exp(-np.abs(x)))


@dataclass(frozen=True)
class SoftmaxLink:
    """Softmax link function h(a, theta) = log(1 + exp(a @ theta)) / denominator.

    All methods accept an annotation matrix of shape (num_variants, num_params), or a
    single annotation row, and a parameter vector of shape (num_params,).

    Attributes:
        denominator: roughly the number of variants, so that the per-variant
            heritability at theta = 0 sums to log(2) over the genome
    """
    denominator: float

    def __post_init__(self):
        if not self.denominator > 0:
            raise ValueError(f"Link function denominator must be positive, got {self.denominator}")

    @staticmethod
    def _link_arg(annot: np.ndarray, params: np.ndarray) -> np.ndarray:
        annot = np.atleast_2d(np.asarray(annot, dtype=np.float64))
        params = np.asarray(params, dtype=np.float64).ravel()
        if annot.shape[1] != len(params):
            raise ValueError(f"Annotations have {annot.shape[1]} columns but there are {len(params)} parameters")

        # Avoid platform-specific divide by zero warning for matmul with zeros matrix
        if not np.any(annot):
            return np.zeros(annot.shape[0])

        return annot @ params

    def __call__(self, annot: np.ndarray, params: np.ndarray) -> np.ndarray:
        """Per-variant heritability."""
        return softmax_robust(self._link_arg(annot, params)) / self.denominator

    def grad(self, annot: np.ndarray, params: np.ndarray) -> np.ndarray:
        """Jacobian of the per-variant heritability wrt params, shape (num_variants, num_params)."""
        annot = np.atleast_2d(np.asarray(annot, dtype=np.float64))
        del_h_del_x, _ = self.derivatives(self._link_arg(annot, params))
        return annot * del_h_del_x[:, np.newaxis]

    def hess(self, annot: np.ndarray, params: np.ndarray) -> np.ndarray:
        """Second derivatives d^2 h_i / d theta_k^2, shape (num_variants, num_params)."""
        annot = np.atleast_2d(np.asarray(annot, dtype=np.float64))
        _, del2_h_del_x2 = self.derivatives(self._link_arg(annot, params))
        return np.square(annot) * del2_h_del_x2[:, np.newaxis]

    def derivatives(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """First and second derivatives of the per-variant heritability wrt x = a @ theta."""
        x = np.asarray(x, dtype=np.float64)
        sigmoid = expit(x)
        return sigmoid / self.denominator, sigmoid * (1 - sigmoid) / self.denominator

    def inverse(self, h2: float) -> float:
        """Value of x = a @ theta at which the per-variant heritability equals h2."""
        if not h2 > 0:
            raise ValueError(f"Inverse link function requires positive heritability, got {h2}")
        x = h2 * self.denominator
        return float(x + np.log(-np.expm1(-x)))
