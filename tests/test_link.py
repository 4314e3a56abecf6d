"""Tests for the softmax link function."""

import numpy as np
import pytest

from graphreml import SoftmaxLink, softmax_robust


def test_softmax_robust():
    assert np.isclose(softmax_robust(0.0), np.log(2))
    assert np.isclose(softmax_robust(1000.0), 1000.0)
    assert np.isclose(softmax_robust(-50.0), np.exp(-50.0), rtol=1e-10)
    assert np.all(np.isfinite(softmax_robust(np.array([-1e4, 1e4]))))


def test_softmax_link_reference_values():
    """Values of linkFn, linkFnGrad and linkFnHess at annot = 1:3, theta = (2:4)/10."""
    link = SoftmaxLink(denominator=10)
    annot = np.array([[1, 2, 3]])
    theta = np.array([0.2, 0.3, 0.4])

    assert np.allclose(link(annot, theta), 0.2127, rtol=1e-3)
    assert np.allclose(link.grad(annot, theta), [0.0881, 0.1762, 0.2642], rtol=1e-3)
    assert np.allclose(link.hess(annot, theta), [0.0105, 0.0420, 0.0945], rtol=1e-3)


def test_link_gradient_matches_finite_differences():
    rng = np.random.RandomState(0)
    link = SoftmaxLink(denominator=5.0)
    annot = rng.randn(6, 3)
    theta = np.array([0.1, -0.4, 0.7])
    step = 1e-6

    numeric = np.column_stack([
        (link(annot, theta + step * e) - link(annot, theta - step * e)) / (2 * step)
        for e in np.eye(3)
    ])
    assert np.allclose(link.grad(annot, theta), numeric, atol=1e-8)


def test_link_inverse():
    link = SoftmaxLink(denominator=100.0)
    for h2 in [1e-6, 1e-3, 0.5]:
        x = link.inverse(h2)
        assert np.isclose(link(np.ones((1, 1)), [x])[0], h2)

    with pytest.raises(ValueError):
        link.inverse(0.0)


def test_zero_annotations():
    link = SoftmaxLink(denominator=2.0)
    assert np.allclose(link(np.zeros((3, 2)), [1.0, 2.0]), np.log(2) / 2)


def test_invalid_link():
    with pytest.raises(ValueError):
        SoftmaxLink(denominator=0.0)
    with pytest.raises(ValueError):
        SoftmaxLink(denominator=1.0)(np.ones((2, 2)), np.ones(3))
