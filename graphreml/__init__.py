"""graphREML: partitioned heritability from GWAS summary statistics and LD precision matrices."""

from graphreml.blocks import LDBlock, ProxyRecord, check_annotations, reconcile_block, reconcile_blocks
from graphreml.heritability import GraphREML, MethodOptions, ModelOptions, run_graphREML
from graphreml.inference import compute_inference
from graphreml.io import load_blocks, save_blocks, write_jackknife_hdf5, write_results
from graphreml.large_effects import LargeEffectPolicy, default_chisq_threshold, filter_blocks
from graphreml.likelihood import (
    block_likelihood,
    gaussian_likelihood,
    gaussian_likelihood_gradient,
    gaussian_likelihood_hessian,
)
from graphreml.link import SoftmaxLink, softmax_robust
from graphreml.multiprocessing_template import ParallelProcessor, SharedData, WorkerManager
from graphreml.precision import PrecisionOperator
from graphreml.results import Diagnostics, Estimate, GraphREMLResult, IterationTrace, JackknifeRecord
from graphreml.simulate import simulate_block_zscores, simulate_blocks, simulate_zscores

__all__ = [
    'LDBlock',
    'ProxyRecord',
    'check_annotations',
    'reconcile_block',
    'reconcile_blocks',
    'LargeEffectPolicy',
    'default_chisq_threshold',
    'filter_blocks',
    'PrecisionOperator',
    'SharedData',
    'ParallelProcessor',
    'WorkerManager',
    'SoftmaxLink',
    'softmax_robust',
    'block_likelihood',
    'gaussian_likelihood',
    'gaussian_likelihood_gradient',
    'gaussian_likelihood_hessian',
    'compute_inference',
    'GraphREML',
    'ModelOptions',
    'MethodOptions',
    'run_graphREML',
    'Estimate',
    'Diagnostics',
    'IterationTrace',
    'JackknifeRecord',
    'GraphREMLResult',
    'load_blocks',
    'save_blocks',
    'write_results',
    'write_jackknife_hdf5',
    'simulate_block_zscores',
    'simulate_zscores',
    'simulate_blocks',
]
