"""Functions for computing likelihoods of GWAS summary statistics in an LD block."""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .precision import PrecisionOperator


@dataclass
class BlockLikelihood:
    """Output of the likelihood computation for one block.

    Attributes:
        likelihood: Log-likelihood of the block
        gradient: Gradient of the log-likelihood wrt the parameters
        hessian: Average information approximation of the Hessian wrt the parameters
        node_gradient: Gradient wrt the per-variant effect-size variance of each
            summary-statistic variant
        node_hessian: Diagonal of the Hessian wrt the per-variant effect-size variances
    """
    likelihood: float
    gradient: Optional[np.ndarray] = None
    hessian: Optional[np.ndarray] = None
    node_gradient: Optional[np.ndarray] = None
    node_hessian: Optional[np.ndarray] = None


def gaussian_likelihood(
    pz: np.ndarray,
    M: PrecisionOperator,
) -> float:
    """Compute log-likelihood of GWAS summary statistics under a Gaussian model.

    The model is:
        beta ~ MVN(0, D)
        z|beta ~ MVN(sqrt(n)*R*beta, c*R) where R is the LD matrix, n the sample size,
            c the intercept
        pz = inv(R) * z / sqrt(n)
        M = cov(pz) = D + c*inv(R)/n

    Args:
        pz: Array of precision-premultiplied GWAS effect size estimates
        M: PrecisionOperator. This should be the covariance of pz.

    Returns:
        Log-likelihood value
    """
    # Following scipy's convention:
    # log_pdf = -0.5 * (n * log(2π) + log|Σ| + x^T Σ^{-1} x)
    n = len(pz)
    logdet = M.logdet()

    b = M.solve(pz)
    quad = np.sum(pz * b)

    return -0.5 * (n * np.log(2 * np.pi) + logdet + quad)


def gaussian_likelihood_gradient(
    pz: np.ndarray,
    M: PrecisionOperator,
    del_M_del_a: Optional[np.ndarray] = None,
    n_samples: int = 0,
    seed: Optional[int] = None,
    trace_estimator: str = "hutchinson",
    b: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Computes the score under a Gaussian model.

    Args:
        pz: Array of precision-premultiplied GWAS effect size estimates
        M: PrecisionOperator. This should be the covariance of pz.
        del_M_del_a: Matrix of derivatives of M's diagonal elements wrt parameters a
        n_samples: Number of probe vectors for the stochastic trace estimator;
            0 computes the diagonal of inv(M) exactly
        seed: Random seed for generating probe vectors
        trace_estimator: "hutchinson" or "xdiag", used if n_samples > 0
        b: inv(M) * pz, if already computed

    Returns:
        Array of diagonal elements of the gradient wrt M's diagonal elements,
        or with respect to parameters a if del_M_del_a is provided
    """
    if b is None:
        b = M.solve(pz)

    method = "exact" if n_samples == 0 else trace_estimator
    minv_diag = M.inverse_diagonal(method=method, n_samples=n_samples, seed=seed)

    node_grad = -0.5 * (minv_diag - b**2)

    return node_grad if del_M_del_a is None else node_grad @ del_M_del_a


def gaussian_likelihood_hessian(
    pz: np.ndarray,
    M: PrecisionOperator,
    del_M_del_a: np.ndarray,
    b: Optional[np.ndarray] = None,
    extra_columns: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Computes the average information matrix of the Gaussian log-likelihood.

    The result is -1/2 * u^T * inv(M) * u, where column k of u is dM/da_k * inv(M) * pz.

    Args:
        pz: Array of precision-premultiplied GWAS effect size estimates
        M: PrecisionOperator. This should be the covariance of pz.
        del_M_del_a: Matrix of derivatives of M's diagonal elements wrt parameters a
        b: inv(M) * pz, if already computed
        extra_columns: Columns dM/da_k * inv(M) * pz for parameters whose derivative
            of M is not diagonal; appended after those of del_M_del_a

    Returns:
        Matrix of second derivatives wrt parameters a
    """
    if b is None:
        b = M.solve(pz)
    b_scaled = b[:, np.newaxis] * del_M_del_a
    if extra_columns is not None:
        b_scaled = np.column_stack([b_scaled, extra_columns])
    return -0.5 * (b_scaled.T @ M.solve(b_scaled))


def block_likelihood(
    z: np.ndarray,
    sigmasq: np.ndarray,
    sigmasq_grad: np.ndarray,
    precision,
    sumstats_indices: np.ndarray,
    sample_size: float,
    intercept: float = 1.0,
    fixed_intercept: bool = True,
    likelihood_only: bool = False,
    num_samples: int = 0,
    seed: Optional[int] = None,
    trace_estimator: str = "hutchinson",
    node_stats: bool = False,
) -> BlockLikelihood:
    """Log-likelihood, gradient and Hessian of one block's summary statistics.

    The covariance of pz = S z / sqrt(n) is M = c S / n + diag(sigmasq), where S is the
    Schur complement of the precision matrix onto the summary-statistic indices.

    Args:
        z: Z scores, ordered like sumstats_indices
        sigmasq: Per-variant effect-size variance of each summary-statistic variant
        sigmasq_grad: Derivatives of sigmasq wrt the annotation parameters,
            shape (len(z), num_annotation_params)
        precision: Precision matrix of the block (sparse matrix)
        sumstats_indices: Rows of the precision matrix corresponding to z
        sample_size: GWAS sample size n
        intercept: Value of the intercept c
        fixed_intercept: If False, the intercept is a parameter and the gradient and
            Hessian have one more trailing entry
        likelihood_only: Skip the gradient and Hessian
        num_samples: Number of probe vectors for the stochastic trace estimator; 0 is exact
        seed: Seed for the probe vectors
        trace_estimator: "hutchinson" or "xdiag"
        node_stats: Also return the gradient and Hessian diagonal wrt sigmasq

    Returns:
        BlockLikelihood
    """
    if intercept <= 0:
        if likelihood_only:
            return BlockLikelihood(likelihood=-np.inf)
        raise ValueError(f"Intercept must be positive, got {intercept}")

    z = np.asarray(z, dtype=np.float64).ravel()
    sigmasq = np.asarray(sigmasq, dtype=np.float64).ravel()
    M = PrecisionOperator(precision)[np.asarray(sumstats_indices)]

    # Work in effect-size as opposed to Z score units
    pz = (M @ z) / np.sqrt(sample_size)
    M.times_scalar(intercept / sample_size)
    M.update_matrix(sigmasq)

    likelihood = gaussian_likelihood(pz, M)
    if likelihood_only:
        return BlockLikelihood(likelihood=likelihood)

    b = M.solve(pz)
    node_gradient = gaussian_likelihood_gradient(pz, M, n_samples=num_samples, seed=seed,
                                                 trace_estimator=trace_estimator, b=b)
    minv_diag = b**2 - 2 * node_gradient

    gradient = node_gradient @ sigmasq_grad
    intercept_column = None

    if not fixed_intercept:
        # dM/dc = S/n = (M - diag(sigmasq)) / c
        intercept_gradient = -0.5 * (len(z) - minv_diag @ sigmasq - pz @ b + sigmasq @ b**2) / intercept
        gradient = np.append(gradient, intercept_gradient)
        intercept_column = (pz - sigmasq * b) / intercept

    hessian = gaussian_likelihood_hessian(pz, M, sigmasq_grad, b=b, extra_columns=intercept_column)

    result = BlockLikelihood(likelihood=likelihood, gradient=gradient, hessian=hessian)
    if node_stats:
        result.node_gradient = node_gradient
        result.node_hessian = -0.5 * b**2 * minv_diag
    M.del_factor()

    return result
