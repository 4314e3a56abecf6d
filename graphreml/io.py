"""Reading and writing LD blocks and graphREML results."""

import os
from typing import List, Optional

import h5py
import numpy as np
import polars as pl
from filelock import FileLock
from scipy.sparse import csc_matrix

from .blocks import LDBlock
from .results import GraphREMLResult

COMPRESSION_TYPE = 'lzf'


def _create_dataset(group: h5py.Group, name: str, data: np.ndarray) -> None:
    # Empty datasets cannot be chunked
    data = np.asarray(data)
    compression = COMPRESSION_TYPE if data.size > 0 else None
    group.create_dataset(name, data=data, compression=compression)


def save_blocks(path: str, blocks: List[LDBlock]) -> None:
    """Write LD blocks to an HDF5 file with one group per block.

    Args:
        path: Output file; overwritten if it exists
        blocks: Blocks to write
    """
    with h5py.File(path, 'w') as f:
        f.attrs['num_blocks'] = len(blocks)
        for i, block in enumerate(blocks):
            group = f.create_group(f"block_{i}")
            group.attrs['shape'] = block.precision.shape
            group.attrs['block_id'] = block.block_id
            precision = csc_matrix(block.precision)
            datasets = {
                'data': precision.data,
                'indices': precision.indices,
                'indptr': precision.indptr,
                'z': block.z,
                'sumstats_indices': block.sumstats_indices,
                'annotation_indices': block.annotation_indices,
                'annotations': block.annotations,
            }
            for name, data in datasets.items():
                _create_dataset(group, name, data)


def load_blocks(path: str) -> List[LDBlock]:
    """Read LD blocks written by save_blocks.

    Args:
        path: HDF5 file

    Returns:
        List of blocks in the order they were written
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Block file not found: {path}")

    blocks = []
    with h5py.File(path, 'r') as f:
        for i in range(int(f.attrs['num_blocks'])):
            group = f[f"block_{i}"]
            precision = csc_matrix(
                (group['data'][:], group['indices'][:], group['indptr'][:]),
                shape=tuple(group.attrs['shape']),
            )
            blocks.append(LDBlock(
                precision=precision,
                z=group['z'][:],
                annotations=group['annotations'][:],
                sumstats_indices=group['sumstats_indices'][:],
                annotation_indices=group['annotation_indices'][:],
                block_id=int(group.attrs['block_id']),
            ))
    return blocks


def write_results(prefix: str, result: GraphREMLResult, annotation_names: Optional[List[str]] = None) -> List[str]:
    """Write tab-separated tables of estimates, convergence and LD proxies.

    Args:
        prefix: Output files are prefix.estimates.tsv, prefix.convergence.tsv and
            prefix.proxies.tsv
        result: Output of run_graphREML
        annotation_names: Name of each annotation; a large-effect annotation, if
            one was added, is named 'large_effect' unless a name is provided for it

    Returns:
        Paths of the files that were written
    """
    num_annotations = result.estimate.num_annotations
    if annotation_names is not None and len(annotation_names) == num_annotations - 1 \
            and result.large_effect_annotation is not None:
        annotation_names = list(annotation_names) + ['large_effect']

    estimates = result.estimate.to_polars(annotation_names).with_columns(
        pl.lit(result.estimate.log_likelihood).alias('log_likelihood'),
        pl.lit(result.estimate.intercept).alias('intercept'),
        pl.lit(result.estimate.intercept_se).alias('intercept_se'),
        pl.lit(result.estimate.intercept_sandwich_se).alias('intercept_sandwich_se'),
        pl.lit(result.estimate.intercept_jackknife_se).alias('intercept_jackknife_se'),
    )

    paths = [f"{prefix}.estimates.tsv", f"{prefix}.convergence.tsv", f"{prefix}.proxies.tsv"]
    estimates.write_csv(paths[0], separator='\t')
    result.trace.to_polars().write_csv(paths[1], separator='\t')
    result.proxies_to_polars().write_csv(paths[2], separator='\t')
    return paths


def write_jackknife_hdf5(path: str, result: GraphREMLResult, trait_name: str) -> None:
    """Add a trait to an HDF5 file of jackknife estimates, for downstream score tests.

    Args:
        path: HDF5 file; created if it does not exist
        result: Output of run_graphREML
        trait_name: Name of the trait's group within 'traits'

    Raises:
        ValueError: If the trait is already present in the file
    """
    lock = FileLock(path + ".lock")
    with lock:
        with h5py.File(path, 'a') as f:
            traits_group = f.require_group('traits')
            if trait_name in traits_group:
                raise ValueError(f"The group 'traits/{trait_name}' already exists.")
            group = traits_group.create_group(trait_name)

            jackknife = result.jackknife
            group.create_dataset('parameters', data=result.estimate.params)
            group.create_dataset('jackknife_parameters', data=jackknife.params)
            group.create_dataset('jackknife_h2', data=jackknife.h2)
            group.create_dataset('block_ids', data=jackknife.block_ids)

            if jackknife.variant_score is not None:
                _create_dataset(group, 'gradient', np.concatenate(jackknife.variant_score))
                _create_dataset(group, 'hessian', np.concatenate(jackknife.variant_hessian))
                _create_dataset(group, 'jackknife_blocks', jackknife.variant_jackknife_blocks())
