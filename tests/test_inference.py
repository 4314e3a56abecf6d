"""Tests for jackknife, sandwich and model-based inference."""

import logging

import numpy as np

from graphreml import SoftmaxLink
from graphreml.inference import (
    block_groups,
    compute_inference,
    enrichment_pvalue,
    group_blocks,
    heritability_jacobians,
    jackknife_covariance,
    naive_covariance,
    pseudojackknife,
    sandwich_covariance,
    two_tailed_pvalue,
)


def test_group_blocks():
    blocks = np.arange(5, dtype=float).reshape(5, 1)
    grouped = group_blocks(blocks, 3)
    assert np.array_equal(grouped.ravel(), [0 + 1, 2 + 3, 4])
    assert np.array_equal(block_groups(5, 3), [0, 0, 1, 1, 2])
    assert np.array_equal(block_groups(4, 4), [0, 1, 2, 3])


def test_pseudojackknife_is_exact_for_quadratic_likelihoods():
    """With log-likelihood -h_b (theta - mu_b)^2 / 2 per block, the one-step estimate is exact."""
    h = np.array([1.0, 2.0, 3.0, 4.0])
    mu = np.array([0.5, -1.0, 2.0, 0.0])
    theta = np.sum(h * mu) / np.sum(h)

    gradient_blocks = (-h * (theta - mu)).reshape(-1, 1)
    hessian_blocks = (-h).reshape(-1, 1, 1)
    jackknife = pseudojackknife(gradient_blocks, hessian_blocks, np.array([theta]))

    expected = [(np.sum(h * mu) - h[b] * mu[b]) / (np.sum(h) - h[b]) for b in range(4)]
    assert np.allclose(jackknife.ravel(), expected, atol=1e-9)


def test_jackknife_covariance():
    rng = np.random.RandomState(0)
    params = rng.randn(10, 2)
    cov = jackknife_covariance(params)
    assert np.allclose(cov, np.cov(params, rowvar=False) * 8)
    assert np.all(np.isnan(jackknife_covariance(params[:2])))


def test_naive_covariance(caplog):
    hessian = -np.array([[2.0, 0.5], [0.5, 1.0]])
    assert np.allclose(naive_covariance(hessian), np.linalg.inv(-hessian))

    with caplog.at_level(logging.WARNING):
        cov = naive_covariance(-np.diag([2.0, 0.0]), small_number=1e-2)
    assert "zero fisher information" in caplog.text
    assert np.allclose(cov, np.diag([1 / 2.01, 1 / 0.01]))


def test_sandwich_covariance():
    rng = np.random.RandomState(1)
    gradient_blocks = rng.randn(6, 2)
    naive = np.array([[1.0, 0.2], [0.2, 0.5]])
    expected = naive @ (6 * np.cov(gradient_blocks, rowvar=False)) @ naive
    assert np.allclose(sandwich_covariance(naive, gradient_blocks), expected)
    assert np.all(np.isnan(sandwich_covariance(naive, gradient_blocks[:1])))


def test_two_tailed_pvalue():
    pval = two_tailed_pvalue(np.array([0.0, 1.96]), np.eye(2))
    assert np.allclose(pval, [1.0, 0.05], atol=1e-3)


def test_enrichment_pvalue():
    h2 = np.array([1.0, 0.5])
    p = np.array([1.0, 0.1])
    cov = np.diag([0.01, 0.01])
    pval = enrichment_pvalue(h2, cov, p)
    assert pval[0] == 1.0
    assert pval[1] < 1e-3


def test_heritability_jacobians():
    rng = np.random.RandomState(2)
    link = SoftmaxLink(denominator=50.0)
    annotations = np.column_stack([np.ones(50), rng.rand(50) < 0.3, rng.rand(50)])
    params = np.array([-1.0, 0.5, 0.3])

    h2, h2_jacobian, enrichment, enrichment_jacobian = heritability_jacobians(
        link, annotations, annotations, params)
    assert np.isclose(h2[0], np.sum(link(annotations, params)))
    assert enrichment[0] == 1.0
    assert np.allclose(enrichment_jacobian[0], link.grad(annotations, params).sum(axis=0))

    step = 1e-6
    for k in range(3):
        e = step * np.eye(3)[k]
        h2_plus, _, enrich_plus, _ = heritability_jacobians(link, annotations, annotations, params + e)
        h2_minus, _, enrich_minus, _ = heritability_jacobians(link, annotations, annotations, params - e)
        assert np.allclose(h2_jacobian[:, k], (h2_plus - h2_minus) / (2 * step), atol=1e-7)
        assert np.allclose(enrichment_jacobian[1:, k], (enrich_plus - enrich_minus)[1:] / (2 * step), atol=1e-6)


def _inference_inputs(num_blocks=5, num_params=2, seed=3):
    rng = np.random.RandomState(seed)
    gradient_blocks = rng.randn(num_blocks, num_params) * 0.1
    gradient_blocks -= gradient_blocks.mean(axis=0)
    hessian_blocks = np.zeros((num_blocks, num_params, num_params))
    for b in range(num_blocks):
        A = rng.randn(num_params, num_params)
        hessian_blocks[b] = -(A @ A.T + np.eye(num_params))
    annotations = [np.column_stack([np.ones(10), rng.rand(10) < 0.5]) for _ in range(num_blocks)]
    return gradient_blocks, hessian_blocks, annotations


def test_compute_inference_fixed_intercept():
    gradient_blocks, hessian_blocks, annotations = _inference_inputs()
    link = SoftmaxLink(50.0)
    params = np.array([-2.0, 1.0])
    estimate, diagnostics, jackknife_params, jackknife_h2, groups = compute_inference(
        params, gradient_blocks, hessian_blocks, link, annotations, annotations,
        log_likelihood=-10.0, intercept=1.3)

    assert np.array_equal(estimate.params, params)
    assert estimate.intercept == 1.3
    assert estimate.intercept_se == 0.0
    assert estimate.enrichment[0] == 1.0
    assert estimate.enrichment_pval[0] == 1.0
    assert np.all(estimate.param_se > 0)
    assert np.all(np.isfinite(estimate.h2_jackknife_se))
    assert jackknife_params.shape == (5, 2)
    assert jackknife_h2.shape == (5, 2)
    assert np.array_equal(groups, np.arange(5))
    assert diagnostics.num_blocks == 5
    assert np.allclose(diagnostics.param_cov, np.linalg.inv(-hessian_blocks.sum(axis=0)))


def test_compute_inference_free_intercept():
    gradient_blocks, hessian_blocks, annotations = _inference_inputs(num_params=3)
    link = SoftmaxLink(50.0)
    params = np.array([-2.0, 1.0, 1.05])
    estimate, diagnostics, jackknife_params, _, _ = compute_inference(
        params, gradient_blocks, hessian_blocks, link, annotations, annotations,
        log_likelihood=-10.0, fixed_intercept=False)

    naive = np.linalg.inv(-hessian_blocks.sum(axis=0))
    assert estimate.intercept == 1.05
    assert np.isclose(estimate.intercept_se, np.sqrt(naive[-1, -1]))
    assert len(estimate.params) == 2
    assert diagnostics.param_cov.shape == (2, 2)
    assert np.allclose(diagnostics.param_cov, naive[:2, :2])
    assert jackknife_params.shape == (5, 3)


def test_compute_inference_grouped_jackknife():
    gradient_blocks, hessian_blocks, annotations = _inference_inputs(num_blocks=6)
    _, _, jackknife_params, _, groups = compute_inference(
        np.array([-2.0, 1.0]), gradient_blocks, hessian_blocks, SoftmaxLink(60.0),
        annotations, annotations, log_likelihood=0.0, num_jackknife_blocks=3)
    assert jackknife_params.shape == (3, 2)
    assert np.array_equal(groups, [0, 0, 1, 1, 2, 2])
