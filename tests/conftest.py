"""Shared test fixtures for graphreml."""

from typing import List, Optional

import numpy as np
import pytest
from scipy.sparse import csc_matrix, diags

from graphreml import LDBlock, simulate_blocks


def ar1_precision(n: int, rho: float = 0.5) -> csc_matrix:
    """Tridiagonal precision matrix whose inverse has entries rho^|i-j|."""
    main = np.full(n, 1 + rho ** 2)
    main[0] = main[-1] = 1.0
    off = np.full(n - 1, -rho)
    return csc_matrix(diags([off, main, off], [-1, 0, 1]) / (1 - rho ** 2))


def identity_precision(n: int) -> csc_matrix:
    return csc_matrix(diags(np.ones(n)))


def make_blocks(num_blocks: int = 4,
                block_size: int = 30,
                params: Optional[np.ndarray] = None,
                sample_size: float = 1e4,
                seed: int = 0) -> List[LDBlock]:
    """Blocks with AR(1) LD, an all-ones annotation and a random binary annotation,
    and Z scores simulated from params."""
    rng = np.random.RandomState(seed)
    params = np.array([-4.0, 1.0]) if params is None else params
    blocks = []
    for i in range(num_blocks):
        annotations = np.column_stack([
            np.ones(block_size),
            (rng.rand(block_size) < 0.3).astype(float),
        ])
        blocks.append(LDBlock(
            precision=ar1_precision(block_size),
            z=np.zeros(block_size),
            annotations=annotations,
            block_id=i,
        ))
    return simulate_blocks(blocks, params, sample_size, seed=seed)


@pytest.fixture
def small_precision_matrix():
    """Create a small 3x3 precision matrix for testing."""
    data = np.array([2.0, -1.0, -1.0, 2.0, -1.0, -1.0, 2.0])
    indices = np.array([0, 1, 0, 1, 2, 1, 2])
    indptr = np.array([0, 2, 5, 7])
    return csc_matrix((data, indices, indptr), shape=(3, 3))


@pytest.fixture
def ar1_matrix():
    return ar1_precision(8)


@pytest.fixture
def simulated_blocks():
    return make_blocks()
