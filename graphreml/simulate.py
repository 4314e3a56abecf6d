"""
Simulate GWAS summary statistics under the graphREML model.
"""

from dataclasses import replace
from typing import List, Optional

import numpy as np

from .blocks import LDBlock
from .link import SoftmaxLink
from .precision import PrecisionOperator


def sumstats_heritability(block: LDBlock, params: np.ndarray, link: SoftmaxLink) -> np.ndarray:
    """Per-variant heritability of each summary statistic variant, adding across its
    annotation rows. Annotation rows without a summary statistic are ignored."""
    h2 = link(block.annotations, params)
    sigmasq = np.zeros(block.num_sumstats)
    if block.num_sumstats == 0:
        return sigmasq

    order = np.argsort(block.sumstats_indices, kind='stable')
    sorted_indices = block.sumstats_indices[order]
    position = np.minimum(np.searchsorted(sorted_indices, block.annotation_indices), len(order) - 1)
    found = sorted_indices[position] == block.annotation_indices
    np.add.at(sigmasq, order[position[found]], h2[found])
    return sigmasq


def simulate_block_zscores(
    block: LDBlock,
    sigmasq: np.ndarray,
    sample_size: float,
    intercept: float = 1.0,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Simulate Z scores for the summary statistic variants of a block.

    beta ~ N(0, diag(sigmasq)) and z = sqrt(n) R beta + e, e ~ N(0, c R), where R is
    the correlation matrix of the summary statistic variants.

    Args:
        block: LD block; its Z scores are not used
        sigmasq: Per-variant effect-size variance of each summary statistic variant
        sample_size: GWAS sample size n
        intercept: Intercept c
        seed: Random seed

    Returns:
        Z scores ordered like block.sumstats_indices
    """
    sigmasq = np.asarray(sigmasq, dtype=np.float64).ravel()
    if len(sigmasq) != block.num_sumstats:
        raise ValueError(f"Got {len(sigmasq)} variances for {block.num_sumstats} summary statistics")
    if np.any(sigmasq < 0):
        raise ValueError("Effect-size variances must be non-negative")

    rng = np.random.RandomState(seed)
    ldgm = PrecisionOperator(block.precision)[block.sumstats_indices]

    beta = rng.randn(block.num_sumstats) * np.sqrt(sigmasq)
    signal = ldgm.solve(beta)

    # Generate noise with variance equal to the LD matrix
    white_noise = rng.randn(block.num_indices)
    noise = ldgm.solve_Lt(white_noise)

    return np.sqrt(sample_size) * signal + np.sqrt(intercept) * noise


def simulate_zscores(
    block: LDBlock,
    params: np.ndarray,
    link: SoftmaxLink,
    sample_size: float,
    intercept: float = 1.0,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Simulate Z scores for a block given annotation coefficients; see simulate_block_zscores."""
    sigmasq = sumstats_heritability(block, np.asarray(params, dtype=np.float64), link)
    return simulate_block_zscores(block, sigmasq, sample_size, intercept, seed)


def simulate_blocks(
    blocks: List[LDBlock],
    params: np.ndarray,
    sample_size: float,
    intercept: float = 1.0,
    link_fn_denominator: Optional[float] = None,
    seed: Optional[int] = None,
) -> List[LDBlock]:
    """Replace the Z scores of each block with simulated ones.

    Args:
        blocks: LD blocks
        params: Annotation coefficients
        sample_size: GWAS sample size
        intercept: Intercept
        link_fn_denominator: Denominator of the link function; None -> total number of
            rows of the precision matrices
        seed: Random seed; block i uses seed + i

    Returns:
        New blocks with simulated Z scores
    """
    link = SoftmaxLink(link_fn_denominator or float(sum(block.num_indices for block in blocks)))
    return [
        replace(block, z=simulate_zscores(block, params, link, sample_size, intercept,
                                          None if seed is None else seed + i))
        for i, block in enumerate(blocks)
    ]
