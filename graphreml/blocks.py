"""LD blocks and reconciliation of annotation and summary statistic indices."""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

import numpy as np
from scipy.sparse import csc_matrix

from .precision import PrecisionOperator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class LDBlock:
    """One LD block together with its summary statistics and annotations.

    Attributes:
        precision: Sparse precision matrix of the block
        z: Z scores
        sumstats_indices: Row of the precision matrix for each Z score; defaults to
            0, ..., len(z) - 1
        annotation_indices: Row of the precision matrix for each annotation row;
            duplicates are allowed. Defaults to 0, ..., num_annotation_rows - 1
        annotations: Annotation matrix with one row per annotated variant. The first
            column is expected to be all ones.
        annotation_to_sumstats: For each annotation row, its position in z. Set by
            reconcile_block.
        block_id: Position of the block among the blocks that were passed in
    """
    precision: csc_matrix
    z: np.ndarray
    annotations: np.ndarray
    sumstats_indices: Optional[np.ndarray] = None
    annotation_indices: Optional[np.ndarray] = None
    annotation_to_sumstats: Optional[np.ndarray] = None
    block_id: int = 0

    def __post_init__(self):
        z = np.asarray(self.z, dtype=np.float64).ravel()
        annotations = np.asarray(self.annotations, dtype=np.float64)
        if annotations.ndim == 1:
            annotations = annotations.reshape(-1, 1)
        sumstats_indices = np.arange(len(z)) if self.sumstats_indices is None \
            else np.asarray(self.sumstats_indices, dtype=np.int64).ravel()
        annotation_indices = np.arange(annotations.shape[0]) if self.annotation_indices is None \
            else np.asarray(self.annotation_indices, dtype=np.int64).ravel()

        if len(z) != len(sumstats_indices):
            raise ValueError(f"Block {self.block_id} has {len(z)} Z scores "
                             f"but {len(sumstats_indices)} summary statistic indices")
        if annotations.shape[0] != len(annotation_indices):
            raise ValueError(f"Block {self.block_id} has {annotations.shape[0]} annotation rows "
                             f"but {len(annotation_indices)} annotation indices")

        object.__setattr__(self, 'precision', csc_matrix(self.precision))
        num_rows = self.precision.shape[0]
        for name, indices in [('summary statistic', sumstats_indices), ('annotation', annotation_indices)]:
            if len(indices) > 0 and (indices.min() < 0 or indices.max() >= num_rows):
                raise ValueError(f"Block {self.block_id} has {name} indices outside of its "
                                 f"{num_rows}x{num_rows} precision matrix")

        object.__setattr__(self, 'z', z)
        object.__setattr__(self, 'annotations', annotations)
        object.__setattr__(self, 'sumstats_indices', sumstats_indices)
        object.__setattr__(self, 'annotation_indices', annotation_indices)

    @property
    def num_sumstats(self) -> int:
        return len(self.z)

    @property
    def num_annotations(self) -> int:
        return self.annotations.shape[1]

    @property
    def num_indices(self) -> int:
        """Number of rows of the precision matrix."""
        return self.precision.shape[0]

    @property
    def is_empty(self) -> bool:
        return len(self.z) == 0

    @property
    def max_chisq(self) -> float:
        return float(np.max(self.z ** 2)) if len(self.z) > 0 else 0.0


@dataclass
class ProxyRecord:
    """LD proxies used for the annotated variants of one block that had no Z score.

    Attributes:
        old_indices: Index of each variant without a Z score
        new_indices: Index of its proxy, or -1 if no proxy was found
        r2: Squared correlation between the variant and its proxy, or NaN if no
            proxy was found. Can exceed 1 as the precision matrix is approximate.
        block_id: Block to which the variants belong
    """
    old_indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    new_indices: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    r2: np.ndarray = field(default_factory=lambda: np.zeros(0))
    block_id: int = 0

    def __len__(self) -> int:
        return len(self.old_indices)


def check_annotations(blocks: List[LDBlock]) -> None:
    """Raises ValueError unless every block has the same number of annotations
    and its first annotation column is all ones."""
    num_annotations = {block.num_annotations for block in blocks}
    if len(num_annotations) > 1:
        raise ValueError(f"Blocks have different numbers of annotations: {sorted(num_annotations)}")
    for block in blocks:
        if not np.all(block.annotations[:, 0] == 1):
            raise ValueError(f"First column of annotations matrix is required to be all ones "
                             f"(violated in block {block.block_id})")


def _find_proxies(
    precision: csc_matrix,
    canonical: np.ndarray,
    is_missing: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """For each missing variant, the non-missing variant in highest LD with it.

    Args:
        precision: Precision matrix of the block
        canonical: Sorted unique annotated indices
        is_missing: Which entries of canonical have no Z score

    Returns:
        Tuple containing:
            - Position in canonical of each proxy, or -1 if none was found
            - Squared correlation with each proxy, or NaN if none was found
    """
    missing_positions = np.flatnonzero(is_missing)
    unit_vectors = np.zeros((len(canonical), len(missing_positions)))
    unit_vectors[missing_positions, np.arange(len(missing_positions))] = 1

    # Columns of the correlation matrix among canonical indices
    correlations = PrecisionOperator(precision)[canonical].solve(unit_vectors)
    r2 = np.square(correlations.reshape(len(canonical), -1))

    # A missing variant is never proxied by another missing variant
    r2[is_missing, :] = -np.inf
    r2[~np.isfinite(r2)] = -np.inf

    best = np.argmax(r2, axis=0)
    best_r2 = r2[best, np.arange(len(missing_positions))]
    degenerate = ~(best_r2 > 0)
    best[degenerate] = -1
    best_r2 = np.where(degenerate, np.nan, best_r2)
    return best, best_r2


def _empty_block(block: LDBlock) -> LDBlock:
    return replace(
        block,
        z=np.zeros(0),
        sumstats_indices=np.zeros(0, dtype=np.int64),
        annotation_indices=np.zeros(0, dtype=np.int64),
        annotations=np.zeros((0, block.num_annotations)),
        annotation_to_sumstats=np.zeros(0, dtype=np.int64),
    )


def reconcile_block(block: LDBlock) -> Tuple[LDBlock, ProxyRecord]:
    """Aligns the annotation and summary statistic indices of a block.

    Summary statistics without annotations are dropped. Annotated variants without
    summary statistics are assigned to the non-missing variant in highest LD with
    them. Summary statistics are sorted by index, and each annotation row is mapped
    to the position of its variant (or proxy) among the summary statistics.

    Args:
        block: LDBlock as provided by the user

    Returns:
        Tuple containing:
            - New LDBlock with annotation_to_sumstats set; a block without summary
              statistics for any annotated variant comes back empty
            - ProxyRecord of the LD proxies that were used
    """
    z = block.z
    sumstats_indices = block.sumstats_indices

    # Keep first occurrence of each summary statistic index
    _, first_occurrence = np.unique(sumstats_indices, return_index=True)
    if len(first_occurrence) < len(sumstats_indices):
        logger.debug(f"Block {block.block_id}: dropping "
                     f"{len(sumstats_indices) - len(first_occurrence)} duplicate summary statistics")
        keep = np.sort(first_occurrence)
        z, sumstats_indices = z[keep], sumstats_indices[keep]

    canonical = np.unique(block.annotation_indices)
    has_annotation = np.isin(sumstats_indices, canonical)
    z, sumstats_indices = z[has_annotation], sumstats_indices[has_annotation]

    proxies = ProxyRecord(block_id=block.block_id)
    if len(z) == 0:
        return _empty_block(block), proxies

    annotation_indices = block.annotation_indices
    annotations = block.annotations
    is_missing = ~np.isin(canonical, sumstats_indices)
    if np.any(is_missing):
        proxy_positions, r2 = _find_proxies(block.precision, canonical, is_missing)
        proxies.old_indices = canonical[is_missing]
        proxies.new_indices = np.where(proxy_positions >= 0, canonical[proxy_positions], -1)
        proxies.r2 = r2

        degenerate = proxies.new_indices < 0
        if np.any(degenerate):
            logger.warning(f"Block {block.block_id}: no LD proxy found for indices "
                           f"{proxies.old_indices[degenerate].tolist()}; dropping their annotations")

        resolved = canonical.copy()
        resolved[is_missing] = proxies.new_indices
        annotation_indices = resolved[np.searchsorted(canonical, annotation_indices)]

        keep_rows = annotation_indices >= 0
        annotation_indices, annotations = annotation_indices[keep_rows], annotations[keep_rows]

    order = np.argsort(sumstats_indices, kind='stable')
    z, sumstats_indices = z[order], sumstats_indices[order]

    annotation_to_sumstats = np.searchsorted(sumstats_indices, annotation_indices)
    assert np.array_equal(sumstats_indices[annotation_to_sumstats], annotation_indices)
    assert len(np.unique(annotation_to_sumstats)) == len(sumstats_indices)

    reconciled = replace(
        block,
        z=z,
        sumstats_indices=sumstats_indices,
        annotation_indices=annotation_indices,
        annotations=annotations,
        annotation_to_sumstats=annotation_to_sumstats,
    )
    return reconciled, proxies


def reconcile_blocks(blocks: List[LDBlock]) -> Tuple[List[LDBlock], List[ProxyRecord]]:
    """Reconciles each block; see reconcile_block."""
    reconciled = [reconcile_block(block) for block in blocks]
    num_proxies = sum(len(proxies) for _, proxies in reconciled)
    if num_proxies > 0:
        logger.info(f"Assigned LD proxies to {num_proxies} variants without summary statistics")
    return [block for block, _ in reconciled], [proxies for _, proxies in reconciled]
