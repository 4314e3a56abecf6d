"""Handling of blocks containing large-effect variants."""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import numpy as np

from .blocks import LDBlock
from .link import SoftmaxLink

logger = logging.getLogger(__name__)


def default_chisq_threshold(sample_size: float) -> float:
    return max(sample_size * 0.001, 80.0)


class LargeEffectPolicy(Enum):
    """What to do with blocks whose largest chi^2 statistic exceeds the threshold."""
    KEEP = 'keep'
    DISCARD = 'discard'
    ANNOTATE_SNP = 'annotateSNP'
    ANNOTATE_SNP_LINEAR = 'annotateSNP_linear'
    ANNOTATE_BLOCK = 'annotateBlock'

    @classmethod
    def from_name(cls, name) -> 'LargeEffectPolicy':
        if isinstance(name, cls):
            return name
        for policy in cls:
            if policy.value.lower() == str(name).lower():
                return policy
        valid = ', '.join(policy.value for policy in cls)
        raise ValueError(f"Unknown large effect behavior '{name}'. Valid options are {valid}")

    @property
    def adds_annotation(self) -> bool:
        return self in (LargeEffectPolicy.ANNOTATE_SNP,
                        LargeEffectPolicy.ANNOTATE_SNP_LINEAR,
                        LargeEffectPolicy.ANNOTATE_BLOCK)

    def apply(self, block: LDBlock, threshold: float) -> Optional[np.ndarray]:
        """New annotation column for a block, or None if the block is below the threshold
        or the policy does not add annotations."""
        if not self.adds_annotation or block.max_chisq <= threshold:
            return None

        column = np.zeros(block.annotations.shape[0])
        if self is LargeEffectPolicy.ANNOTATE_BLOCK:
            column[:] = 1
            return column

        # Lead variant is flagged on the first annotation row that maps to it
        lead = int(np.argmax(block.z ** 2))
        lead_row = np.flatnonzero(block.annotation_to_sumstats == lead)[0]
        column[lead_row] = 1 if self is LargeEffectPolicy.ANNOTATE_SNP else block.max_chisq - threshold
        return column

    def initial_param(self, link: SoftmaxLink, threshold: float, sample_size: float,
                      num_indices: int, num_blocks: int) -> float:
        """Starting value of the coefficient for the new annotation."""
        if self is LargeEffectPolicy.ANNOTATE_BLOCK:
            return link.inverse(threshold / (num_indices / num_blocks) / sample_size)
        return link.inverse(threshold / sample_size)


@dataclass
class FilteredBlocks:
    """Output of filter_blocks.

    Attributes:
        blocks: Retained blocks, with the large-effect annotation appended if one was created
        num_discarded_blocks: Number of blocks discarded because of large effects
        num_empty_blocks: Number of blocks discarded because they had no summary statistics
        discarded_block_ids: block_id of each block discarded because of large effects
        large_effect_annotation: New annotation column for each retained block, or None
        extra_param: Starting value of the coefficient for the new annotation, or None
    """
    blocks: List[LDBlock]
    num_discarded_blocks: int = 0
    num_empty_blocks: int = 0
    discarded_block_ids: List[int] = field(default_factory=list)
    large_effect_annotation: Optional[List[np.ndarray]] = None
    extra_param: Optional[float] = None


def filter_blocks(
    blocks: List[LDBlock],
    policy: LargeEffectPolicy,
    threshold: float,
    sample_size: float = 1.0,
    link_fn_denominator: Optional[float] = None,
) -> FilteredBlocks:
    """Drops empty blocks and applies the large-effect policy.

    Args:
        blocks: Reconciled blocks
        policy: Large-effect policy
        threshold: chi^2 threshold above which a block has a large effect
        sample_size: GWAS sample size
        link_fn_denominator: Denominator of the link function used to initialize the
            large-effect coefficient; defaults to the number of rows of the precision
            matrices of the retained blocks

    Returns:
        FilteredBlocks
    """
    result = FilteredBlocks(blocks=[])
    for block in blocks:
        if block.is_empty:
            logger.debug(f"Block {block.block_id} has no summary statistics and is dropped")
            result.num_empty_blocks += 1
        elif policy is LargeEffectPolicy.DISCARD and block.max_chisq > threshold:
            result.num_discarded_blocks += 1
            result.discarded_block_ids.append(block.block_id)
        else:
            result.blocks.append(block)

    if result.num_discarded_blocks > 0:
        logger.info(f"Discarding {result.num_discarded_blocks} out of {len(blocks)} LD blocks "
                    f"with chi^2 above {threshold}")

    columns = [policy.apply(block, threshold) for block in result.blocks]
    if all(column is None for column in columns):
        return result

    columns = [np.zeros(block.annotations.shape[0]) if column is None else column
               for block, column in zip(result.blocks, columns)]
    logger.info(f"Adding new annotation for large effects in "
                f"{sum(np.any(column != 0) for column in columns)} blocks")
    result.blocks = [
        replace(block, annotations=np.column_stack([block.annotations, column]))
        for block, column in zip(result.blocks, columns)
    ]
    result.large_effect_annotation = columns
    num_indices = sum(block.num_indices for block in result.blocks)
    link = SoftmaxLink(link_fn_denominator or num_indices)
    result.extra_param = policy.initial_param(link, threshold, sample_size,
                                              num_indices, len(result.blocks))
    return result
