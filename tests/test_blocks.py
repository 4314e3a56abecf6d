"""Tests for LD blocks and index reconciliation."""

import logging

import numpy as np
import pytest

from graphreml import LDBlock, check_annotations, reconcile_block, reconcile_blocks
from conftest import ar1_precision, identity_precision


def _block_with_missing_variant(rho=0.5):
    return LDBlock(
        precision=ar1_precision(6, rho),
        z=np.array([1.0, 2.0, 3.0, 4.0, 5.0]),
        sumstats_indices=np.array([4, 3, 3, 0, 5]),
        annotation_indices=np.array([0, 1, 3, 4, 4]),
        annotations=np.column_stack([np.ones(5), [0, 1, 0, 1, 1]]),
        block_id=7,
    )


def test_ldblock_defaults():
    block = LDBlock(precision=ar1_precision(4), z=np.zeros(3), annotations=np.ones((4, 1)))
    assert np.array_equal(block.sumstats_indices, [0, 1, 2])
    assert np.array_equal(block.annotation_indices, [0, 1, 2, 3])
    assert block.num_indices == 4
    assert block.num_sumstats == 3
    assert block.annotation_to_sumstats is None


def test_ldblock_validation():
    with pytest.raises(ValueError):
        LDBlock(precision=ar1_precision(4), z=np.zeros(3), annotations=np.ones((4, 1)),
                sumstats_indices=np.array([0, 1]))
    with pytest.raises(ValueError):
        LDBlock(precision=ar1_precision(4), z=np.zeros(2), annotations=np.ones((2, 1)),
                annotation_indices=np.array([0, 4]))


def test_check_annotations():
    good = LDBlock(precision=ar1_precision(3), z=np.zeros(3), annotations=np.ones((3, 2)))
    check_annotations([good])

    bad = LDBlock(precision=ar1_precision(3), z=np.zeros(3),
                  annotations=np.column_stack([[1, 0, 1], np.ones(3)]))
    with pytest.raises(ValueError, match="all ones"):
        check_annotations([good, bad])

    other = LDBlock(precision=ar1_precision(3), z=np.zeros(3), annotations=np.ones((3, 3)))
    with pytest.raises(ValueError):
        check_annotations([good, other])


def test_reconcile_block():
    rho = 0.5
    block, proxies = reconcile_block(_block_with_missing_variant(rho))

    # Duplicate index 3 keeps its first Z score; index 5 has no annotation
    assert np.array_equal(block.sumstats_indices, [0, 3, 4])
    assert np.array_equal(block.z, [4.0, 2.0, 1.0])

    # Index 1 is missing and proxied by index 0, its neighbor
    assert np.array_equal(proxies.old_indices, [1])
    assert np.array_equal(proxies.new_indices, [0])
    assert np.allclose(proxies.r2, [rho ** 2])
    assert proxies.block_id == 7

    assert np.array_equal(block.annotation_indices, [0, 0, 3, 4, 4])
    assert np.array_equal(block.annotation_to_sumstats, [0, 0, 1, 2, 2])
    assert block.annotations.shape == (5, 2)
    assert block.block_id == 7


def test_reconcile_block_is_idempotent():
    once, _ = reconcile_block(_block_with_missing_variant())
    twice, proxies = reconcile_block(once)
    assert len(proxies) == 0
    assert np.array_equal(once.z, twice.z)
    assert np.array_equal(once.sumstats_indices, twice.sumstats_indices)
    assert np.array_equal(once.annotation_indices, twice.annotation_indices)
    assert np.array_equal(once.annotation_to_sumstats, twice.annotation_to_sumstats)
    assert np.array_equal(once.annotations, twice.annotations)


def test_reconcile_block_mapping_is_total():
    """Every summary statistic is hit by at least one annotation row."""
    rng = np.random.RandomState(3)
    annotation_indices = rng.choice(20, size=25)
    block = LDBlock(
        precision=ar1_precision(20),
        z=rng.randn(12),
        sumstats_indices=rng.permutation(20)[:12],
        annotation_indices=annotation_indices,
        annotations=np.ones((25, 1)),
    )
    reconciled, proxies = reconcile_block(block)
    if reconciled.is_empty:
        return
    assert np.all(np.diff(reconciled.sumstats_indices) > 0)
    mapped = reconciled.sumstats_indices[reconciled.annotation_to_sumstats]
    assert np.array_equal(mapped, reconciled.annotation_indices)
    assert np.array_equal(np.unique(reconciled.annotation_to_sumstats), np.arange(reconciled.num_sumstats))
    assert np.all(proxies.r2 > 0)


def test_reconcile_empty_block():
    block = LDBlock(
        precision=ar1_precision(5),
        z=np.array([1.0, 2.0]),
        sumstats_indices=np.array([3, 4]),
        annotation_indices=np.array([0, 1]),
        annotations=np.ones((2, 2)),
    )
    reconciled, proxies = reconcile_block(block)
    assert reconciled.is_empty
    assert reconciled.annotations.shape == (0, 2)
    assert len(proxies) == 0


def test_degenerate_proxy_search(caplog):
    """A missing variant uncorrelated with every present variant gets no proxy."""
    block = LDBlock(
        precision=identity_precision(4),
        z=np.array([1.0, 2.0]),
        sumstats_indices=np.array([0, 2]),
        annotation_indices=np.array([0, 1, 2]),
        annotations=np.column_stack([np.ones(3), [0.0, 1.0, 0.0]]),
    )
    with caplog.at_level(logging.WARNING):
        reconciled, proxies = reconcile_block(block)

    assert np.array_equal(proxies.old_indices, [1])
    assert np.array_equal(proxies.new_indices, [-1])
    assert np.all(np.isnan(proxies.r2))
    assert np.array_equal(reconciled.annotation_indices, [0, 2])
    assert np.array_equal(reconciled.annotation_to_sumstats, [0, 1])
    assert "no LD proxy" in caplog.text


def test_reconcile_blocks():
    blocks = [_block_with_missing_variant(), LDBlock(precision=ar1_precision(3), z=np.zeros(3),
                                                     annotations=np.ones((3, 2)), block_id=1)]
    reconciled, proxies = reconcile_blocks(blocks)
    assert len(reconciled) == len(proxies) == 2
    assert len(proxies[0]) == 1
    assert len(proxies[1]) == 0
