"""Tests for likelihood computation functions."""

import numpy as np
import pytest
from scipy.sparse import csc_matrix
from scipy.stats import multivariate_normal

from graphreml import SoftmaxLink
from graphreml.likelihood import (
    block_likelihood,
    gaussian_likelihood,
    gaussian_likelihood_gradient,
    gaussian_likelihood_hessian,
)
from graphreml.precision import PrecisionOperator
from conftest import ar1_precision


def test_gaussian_likelihood_basic():
    """Test basic functionality of gaussian_likelihood."""
    data = np.array([2.0, -1.0, -1.0, 2.0])
    indices = np.array([0, 1, 0, 1])
    indptr = np.array([0, 2, 4])
    matrix = csc_matrix((data, indices, indptr), shape=(2, 2))
    M = PrecisionOperator(matrix)

    pz = np.array([0.5, -0.25])
    expected = multivariate_normal.logpdf(pz, cov=matrix.toarray())
    assert np.isclose(gaussian_likelihood(pz, M), expected)


def test_gaussian_likelihood_gradient_and_hessian_shapes():
    M = PrecisionOperator(ar1_precision(5))
    pz = np.linspace(-1, 1, 5)
    del_M_del_a = np.column_stack([np.ones(5), np.arange(5.0)])

    node_grad = gaussian_likelihood_gradient(pz, M)
    assert node_grad.shape == (5,)
    grad = gaussian_likelihood_gradient(pz, M, del_M_del_a)
    assert np.allclose(grad, node_grad @ del_M_del_a)

    hess = gaussian_likelihood_hessian(pz, M, del_M_del_a)
    assert hess.shape == (2, 2)
    assert np.allclose(hess, hess.T)
    assert np.all(np.linalg.eigvalsh(hess) <= 1e-12)


def _setup(seed=0):
    rng = np.random.RandomState(seed)
    precision = ar1_precision(12, rho=0.6)
    sumstats_indices = np.array([0, 2, 3, 5, 8, 9, 11])
    annotations = np.column_stack([np.ones(7), rng.rand(7) < 0.5])
    z = rng.randn(7) * 2
    return precision, sumstats_indices, annotations, z


def test_block_likelihood_matches_dense_marginal():
    """Likelihood of pz = S z / sqrt(n) computed via the Schur complement equals the dense one."""
    precision, indices, _, z = _setup()
    sigmasq = np.linspace(1e-4, 1e-3, 7)
    n, c = 1000.0, 1.2

    R = np.linalg.inv(precision.toarray())[np.ix_(indices, indices)]
    S = np.linalg.inv(R)
    pz = S @ z / np.sqrt(n)
    expected = multivariate_normal.logpdf(pz, cov=c * S / n + np.diag(sigmasq))

    result = block_likelihood(z, sigmasq, np.ones((7, 1)), precision, indices,
                              sample_size=n, intercept=c, likelihood_only=True)
    assert np.isclose(result.likelihood, expected)
    assert result.gradient is None


def _log_likelihood(params, precision, indices, annotations, z, link, n, intercept=1.0):
    sigmasq = link(annotations, params)
    return block_likelihood(z, sigmasq, None, precision, indices, sample_size=n,
                            intercept=intercept, likelihood_only=True).likelihood


def test_block_likelihood_gradient_matches_finite_differences():
    precision, indices, annotations, z = _setup()
    link = SoftmaxLink(denominator=1000.0)
    n = 1000.0
    params = np.array([-0.5, 0.8])

    result = block_likelihood(z, link(annotations, params), link.grad(annotations, params),
                              precision, indices, sample_size=n)

    step = 1e-5
    numeric = np.array([
        (_log_likelihood(params + step * e, precision, indices, annotations, z, link, n)
         - _log_likelihood(params - step * e, precision, indices, annotations, z, link, n)) / (2 * step)
        for e in np.eye(2)
    ])
    assert np.allclose(result.gradient, numeric, rtol=1e-4, atol=1e-6)
    assert result.hessian.shape == (2, 2)
    assert np.allclose(result.hessian, result.hessian.T)


def test_block_likelihood_free_intercept_gradient():
    precision, indices, annotations, z = _setup(seed=1)
    link = SoftmaxLink(denominator=1000.0)
    n, c = 1000.0, 1.1
    params = np.array([-0.5, 0.8])

    result = block_likelihood(z, link(annotations, params), link.grad(annotations, params),
                              precision, indices, sample_size=n, intercept=c, fixed_intercept=False)
    assert result.gradient.shape == (3,)
    assert result.hessian.shape == (3, 3)

    step = 1e-6
    numeric = (_log_likelihood(params, precision, indices, annotations, z, link, n, c + step)
               - _log_likelihood(params, precision, indices, annotations, z, link, n, c - step)) / (2 * step)
    assert np.isclose(result.gradient[-1], numeric, rtol=1e-4, atol=1e-6)


def test_block_likelihood_nonpositive_intercept():
    precision, indices, annotations, z = _setup()
    sigmasq = np.full(7, 1e-4)
    result = block_likelihood(z, sigmasq, None, precision, indices, sample_size=100.0,
                              intercept=0.0, likelihood_only=True)
    assert result.likelihood == -np.inf

    with pytest.raises(ValueError):
        block_likelihood(z, sigmasq, np.ones((7, 1)), precision, indices,
                         sample_size=100.0, intercept=-1.0)


def test_block_likelihood_stochastic_gradient():
    precision, indices, annotations, z = _setup()
    sigmasq = np.full(7, 1e-3)
    grad = np.column_stack([np.ones(7)])
    kwargs = dict(sample_size=1000.0, num_samples=5, seed=7)

    first = block_likelihood(z, sigmasq, grad, precision, indices, **kwargs)
    second = block_likelihood(z, sigmasq, grad, precision, indices, **kwargs)
    exact = block_likelihood(z, sigmasq, grad, precision, indices, sample_size=1000.0)
    assert np.array_equal(first.gradient, second.gradient)
    assert first.likelihood == exact.likelihood
    assert np.allclose(first.hessian, exact.hessian)


def test_block_likelihood_node_stats():
    precision, indices, annotations, z = _setup()
    sigmasq = np.full(7, 1e-3)
    sigmasq_grad = annotations.astype(float)
    result = block_likelihood(z, sigmasq, sigmasq_grad, precision, indices,
                              sample_size=1000.0, node_stats=True)
    assert result.node_gradient.shape == (7,)
    assert result.node_hessian.shape == (7,)
    assert np.allclose(result.gradient, result.node_gradient @ sigmasq_grad)
    assert np.all(result.node_hessian <= 0)


def test_block_likelihood_hessian_is_expected_information():
    """Averaged over z, the average information matrix equals -1/2 J^T (inv(M) * inv(M)) J."""
    precision, indices, annotations, _ = _setup(seed=2)
    link = SoftmaxLink(denominator=100.0)
    n, c = 1000.0, 1.0
    params = np.array([-0.5, 0.8])
    sigmasq = link(annotations, params)
    jacobian = link.grad(annotations, params)

    R = np.linalg.inv(precision.toarray())[np.ix_(indices, indices)]
    M = c * np.linalg.inv(R) / n + np.diag(sigmasq)
    M_inv = np.linalg.inv(M)
    expected = -0.5 * jacobian.T @ (M_inv * M_inv) @ jacobian

    rng = np.random.RandomState(0)
    pz_draws = rng.multivariate_normal(np.zeros(len(indices)), M, size=4000)
    hessians = [
        block_likelihood(np.sqrt(n) * R @ pz, sigmasq, jacobian, precision, indices,
                         sample_size=n, intercept=c).hessian
        for pz in pz_draws
    ]
    mean_hessian = np.mean(hessians, axis=0)
    assert np.linalg.norm(mean_hessian - expected) < 0.1 * np.linalg.norm(expected)


def test_block_likelihood_uses_gaussian_kernels():
    """block_likelihood agrees with the kernels applied to the assembled covariance of pz."""
    precision, indices, annotations, z = _setup(seed=3)
    link = SoftmaxLink(denominator=1000.0)
    n = 1000.0
    params = np.array([-0.5, 0.8])
    sigmasq = link(annotations, params)
    jacobian = link.grad(annotations, params)

    S = np.linalg.inv(np.linalg.inv(precision.toarray())[np.ix_(indices, indices)])
    M = PrecisionOperator(csc_matrix(S / n + np.diag(sigmasq)))
    pz = S @ z / np.sqrt(n)

    result = block_likelihood(z, sigmasq, jacobian, precision, indices, sample_size=n)
    assert np.isclose(result.likelihood, gaussian_likelihood(pz, M))
    assert np.allclose(result.gradient, gaussian_likelihood_gradient(pz, M, jacobian))
    assert np.allclose(result.hessian, gaussian_likelihood_hessian(pz, M, jacobian))
