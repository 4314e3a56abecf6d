"""Result records returned by run_graphREML."""

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import polars as pl

from .blocks import ProxyRecord


@dataclass
class Estimate:
    """Point estimates, standard errors and p-values.

    Arrays have one entry per annotation, including the large-effect annotation if one
    was added. Standard errors come in three flavors: model-based (no suffix), sandwich
    and jackknife.

    Attributes:
        params: Coefficient of each annotation
        h2: Heritability of each annotation, sum_i h2_i a_ik
        annotation_sum: Sum of each annotation across annotated variants
        annotation_proportion: Mean of each annotation across annotated variants
        enrichment: (h2_k / annotation_sum_k) / (h2_r / annotation_sum_r) for reference
            annotation r
        log_likelihood: Log-likelihood at the estimate
        intercept: Estimated or fixed value of the intercept
    """
    params: np.ndarray
    h2: np.ndarray
    annotation_sum: np.ndarray
    annotation_proportion: np.ndarray
    enrichment: np.ndarray
    log_likelihood: float
    param_se: np.ndarray
    param_sandwich_se: np.ndarray
    param_jackknife_se: np.ndarray
    coef_pval: np.ndarray
    coef_sandwich_pval: np.ndarray
    coef_jackknife_pval: np.ndarray
    h2_se: np.ndarray
    h2_sandwich_se: np.ndarray
    h2_jackknife_se: np.ndarray
    enrichment_se: np.ndarray
    enrichment_sandwich_se: np.ndarray
    enrichment_jackknife_se: np.ndarray
    enrichment_pval: np.ndarray
    enrichment_sandwich_pval: np.ndarray
    enrichment_jackknife_pval: np.ndarray
    intercept: float = 1.0
    intercept_se: float = 0.0
    intercept_sandwich_se: float = 0.0
    intercept_jackknife_se: float = 0.0

    @property
    def num_annotations(self) -> int:
        return len(self.params)

    def to_polars(self, annotation_names: Optional[List[str]] = None) -> pl.DataFrame:
        """One row per annotation."""
        if annotation_names is None:
            annotation_names = [f"annot_{k}" for k in range(self.num_annotations)]
        if len(annotation_names) != self.num_annotations:
            raise ValueError(f"Got {len(annotation_names)} annotation names "
                             f"for {self.num_annotations} annotations")

        columns = ['params', 'param_se', 'param_sandwich_se', 'param_jackknife_se',
                   'coef_pval', 'coef_sandwich_pval', 'coef_jackknife_pval',
                   'h2', 'h2_se', 'h2_sandwich_se', 'h2_jackknife_se',
                   'annotation_sum', 'annotation_proportion',
                   'enrichment', 'enrichment_se', 'enrichment_sandwich_se', 'enrichment_jackknife_se',
                   'enrichment_pval', 'enrichment_sandwich_pval', 'enrichment_jackknife_pval']
        data = {'annotation': annotation_names}
        data.update({name: np.asarray(getattr(self, name), dtype=np.float64) for name in columns})
        return pl.DataFrame(data)


@dataclass
class Diagnostics:
    """Covariance matrices of the coefficients and of the annotation heritabilities,
    and the state of the optimizer at termination.

    Coefficient covariances exclude the intercept.
    """
    param_cov: np.ndarray
    param_sandwich_cov: np.ndarray
    param_jackknife_cov: np.ndarray
    h2_cov: np.ndarray
    h2_sandwich_cov: np.ndarray
    h2_jackknife_cov: np.ndarray
    converged: bool = False
    num_iterations: int = 0
    num_blocks: int = 0


@dataclass
class IterationTrace:
    """Per-iteration record of the optimizer.

    Attributes:
        params: Parameters at the end of each iteration, including the intercept if free
        objective: Negative log-likelihood at the end of each iteration
        gradient: Gradient of the log-likelihood at the start of each iteration
        trust_region_lambda: Trust region penalty at the end of each iteration
        num_step_attempts: Number of candidate steps evaluated in each iteration
        step_accepted: Whether each iteration changed the parameters
        time_aggregation: Seconds spent computing gradients and Hessians
        time_step: Seconds spent searching for a step
    """
    params: List[np.ndarray] = field(default_factory=list)
    objective: List[float] = field(default_factory=list)
    gradient: List[np.ndarray] = field(default_factory=list)
    trust_region_lambda: List[float] = field(default_factory=list)
    num_step_attempts: List[int] = field(default_factory=list)
    step_accepted: List[bool] = field(default_factory=list)
    time_aggregation: List[float] = field(default_factory=list)
    time_step: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.objective)

    def to_polars(self) -> pl.DataFrame:
        data = {
            'iteration': np.arange(len(self)),
            'objective': np.asarray(self.objective, dtype=np.float64),
            'gradient_norm': np.array([np.linalg.norm(g) for g in self.gradient]),
            'trust_region_lambda': np.asarray(self.trust_region_lambda, dtype=np.float64),
            'num_step_attempts': np.asarray(self.num_step_attempts, dtype=np.int64),
            'step_accepted': np.asarray(self.step_accepted, dtype=bool),
            'time_aggregation': np.asarray(self.time_aggregation, dtype=np.float64),
            'time_step': np.asarray(self.time_step, dtype=np.float64),
        }
        if len(self) > 0:
            params = np.vstack(self.params)
            data.update({f"param_{k}": params[:, k] for k in range(params.shape[1])})
        return pl.DataFrame(data)


@dataclass
class JackknifeRecord:
    """Leave-one-block-out estimates.

    Attributes:
        params: Deleted estimate of the parameters for each jackknife block,
            shape (num_jackknife_blocks, num_params), including the intercept if free
        h2: Annotation heritabilities at each deleted estimate,
            shape (num_jackknife_blocks, num_annotations)
        block_ids: block_id of the blocks, in the order they were used
        block_groups: Jackknife block to which each block belongs
        variant_score: With null_fit, derivative of the log-likelihood wrt the link
            function argument of each annotated variant, one array per block
        variant_hessian: With null_fit, second derivative of the same, one array per block
    """
    params: np.ndarray
    h2: np.ndarray
    block_ids: np.ndarray
    block_groups: np.ndarray
    variant_score: Optional[List[np.ndarray]] = None
    variant_hessian: Optional[List[np.ndarray]] = None

    def variant_jackknife_blocks(self) -> Optional[np.ndarray]:
        """Jackknife block of each annotated variant, concatenated across blocks."""
        if self.variant_score is None:
            return None
        return np.concatenate([
            np.full(len(score), group, dtype=np.int64)
            for score, group in zip(self.variant_score, self.block_groups)
        ])


@dataclass
class GraphREMLResult:
    """Output of run_graphREML.

    Attributes:
        estimate: Point estimates, standard errors and p-values
        diagnostics: Covariance matrices and convergence status
        trace: Per-iteration record of the optimizer
        proxies: LD proxies used in each input block
        jackknife: Leave-one-block-out estimates
        num_discarded_blocks: Number of blocks discarded because of large effects
        num_empty_blocks: Number of blocks without summary statistics
        discarded_block_ids: block_id of each block discarded because of large effects
        large_effect_annotation: Large-effect annotation column of each retained block,
            or None if no such annotation was created
    """
    estimate: Estimate
    diagnostics: Diagnostics
    trace: IterationTrace
    proxies: List[ProxyRecord]
    jackknife: JackknifeRecord
    num_discarded_blocks: int = 0
    num_empty_blocks: int = 0
    discarded_block_ids: List[int] = field(default_factory=list)
    large_effect_annotation: Optional[List[np.ndarray]] = None

    def proxies_to_polars(self) -> pl.DataFrame:
        """One row per LD proxy."""
        return pl.DataFrame({
            'block_id': np.concatenate([np.full(len(p), p.block_id, dtype=np.int64) for p in self.proxies]
                                       + [np.zeros(0, dtype=np.int64)]),
            'old_index': np.concatenate([np.asarray(p.old_indices, dtype=np.int64) for p in self.proxies]
                                        + [np.zeros(0, dtype=np.int64)]),
            'new_index': np.concatenate([np.asarray(p.new_indices, dtype=np.int64) for p in self.proxies]
                                        + [np.zeros(0, dtype=np.int64)]),
            'r2': np.concatenate([np.asarray(p.r2, dtype=np.float64) for p in self.proxies]
                                 + [np.zeros(0)]),
        })
