"""
GraphREML
"""
import logging
import time
from dataclasses import dataclass, replace
from multiprocessing import Value
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .blocks import LDBlock, check_annotations, reconcile_blocks
from .inference import compute_inference
from .large_effects import LargeEffectPolicy, default_chisq_threshold, filter_blocks
from .likelihood import block_likelihood
from .link import SoftmaxLink
from .multiprocessing_template import ParallelProcessor, SharedData
from .results import GraphREMLResult, IterationTrace, JackknifeRecord

logger = logging.getLogger(__name__)

FLAGS = {
    'ERROR': -2,
    'SHUTDOWN': -1,
    'FINISHED': 0,
    'COMPUTE_ALL': 1,
    'COMPUTE_LIKELIHOOD_ONLY': 2,
    'COMPUTE_VARIANT_STATS': 3,
}

TRACE_ESTIMATORS = ('hutchinson', 'xdiag')


@dataclass(frozen=True)
class ModelOptions:
    """Stores model parameters for graphREML.

    Attributes:
        sample_size: GWAS sample size
        params: Starting values of the annotation coefficients; None -> zeros
        intercept: Value of the intercept, or its starting value if not fixed
        fixed_intercept: Whether the intercept is fixed or estimated
        link_fn_denominator: Scalar denominator for link function. None -> total number
            of rows of the precision matrices of the retained blocks
        normalize_annotations: Rescale each annotation to sum to the number of
            precision matrix rows before fitting
        reference_column: Annotation used as the reference for enrichment
        large_effect_behavior: One of 'keep', 'discard', 'annotateSNP',
            'annotateSNP_linear', 'annotateBlock'
        chisq_threshold: chi^2 threshold for large effects; None -> max(0.001 * sample_size, 80)
    """
    sample_size: float = 1.0
    params: Optional[np.ndarray] = None
    intercept: float = 1.0
    fixed_intercept: bool = True
    link_fn_denominator: Optional[float] = None
    normalize_annotations: bool = False
    reference_column: int = 0
    large_effect_behavior: str = 'keep'
    chisq_threshold: Optional[float] = None

    def __post_init__(self):
        if self.params is not None:
            object.__setattr__(self, 'params', np.asarray(self.params, dtype=np.float64).ravel())
        if not self.sample_size > 0:
            raise ValueError(f"sample_size must be positive, got {self.sample_size}")
        if not self.intercept > 0:
            raise ValueError(f"intercept must be positive, got {self.intercept}")
        if self.link_fn_denominator is not None and not self.link_fn_denominator > 0:
            raise ValueError(f"link_fn_denominator must be positive, got {self.link_fn_denominator}")
        if self.reference_column < 0:
            raise ValueError(f"reference_column must be non-negative, got {self.reference_column}")
        LargeEffectPolicy.from_name(self.large_effect_behavior)


@dataclass(frozen=True)
class MethodOptions:
    """Stores method parameters for graphREML.

    Attributes:
        convergence_tol: Terminates when the objective improves by less than
            min_iterations * convergence_tol over the last min_iterations iterations
        min_iterations: Starts checking for convergence after this many iterations
        num_iterations: Maximum number of iterations
        use_trust_region: Trust region search as opposed to a damped Newton step
        trust_region_size: Initial trust region penalty lambda
        trust_region_scalar: Factor by which lambda is shrunk or expanded
        trust_region_rho_lb: Steps with actual / predicted change below this are rejected
        trust_region_rho_ub: Steps with actual / predicted change above this expand the
            trust region
        reset_trust_region: Whether to reset lambda at each iteration
        max_trust_iterations: Maximum number of candidate steps per iteration, and
            maximum number of retries of the damped Newton step
        delta_grad_check: Reject candidate steps at which the gradient norm more than doubles
        gradient_num_samples: Number of probe vectors for the stochastic trace
            estimator in the gradient; 0 -> exact
        gradient_seed: Seed for the probe vectors
        trace_estimator: 'hutchinson' or 'xdiag'
        null_fit: Compute per-variant scores and Hessians at the estimate
        small_number: Regularization for zero Fisher information, and tolerance for
            increases of the objective in the damped Newton step
        num_jackknife_blocks: Number of groups of contiguous blocks for the jackknife;
            None -> one per block
        run_serial: Run in serial rather than parallel
        num_processes: If None, autodetect
        verbose: Flag for verbose output
    """
    convergence_tol: float = 1e-1
    min_iterations: int = 3
    num_iterations: int = 100
    use_trust_region: bool = True
    trust_region_size: float = 1e-3
    trust_region_scalar: float = 10
    trust_region_rho_lb: float = 1e-4
    trust_region_rho_ub: float = 0.99
    reset_trust_region: bool = True
    max_trust_iterations: int = 20
    delta_grad_check: bool = False
    gradient_num_samples: int = 0
    gradient_seed: int = 123
    trace_estimator: str = 'hutchinson'
    null_fit: bool = False
    small_number: float = 1e-6
    num_jackknife_blocks: Optional[int] = None
    run_serial: bool = True
    num_processes: Optional[int] = None
    verbose: bool = False

    def __post_init__(self):
        if self.gradient_num_samples < 0:
            raise ValueError(f"gradient_num_samples must be non-negative, got {self.gradient_num_samples}")
        if self.trace_estimator not in TRACE_ESTIMATORS:
            raise ValueError(f"trace_estimator must be one of {TRACE_ESTIMATORS}, got {self.trace_estimator}")
        if self.num_iterations < 1 or self.max_trust_iterations < 1:
            raise ValueError("num_iterations and max_trust_iterations must be positive")
        if self.min_iterations < 1:
            raise ValueError(f"min_iterations must be positive, got {self.min_iterations}")
        if not 0 < self.trust_region_rho_lb < self.trust_region_rho_ub:
            raise ValueError("Trust region bounds must satisfy 0 < trust_region_rho_lb < trust_region_rho_ub")
        if not self.trust_region_scalar > 1:
            raise ValueError(f"trust_region_scalar must exceed 1, got {self.trust_region_scalar}")
        if self.num_jackknife_blocks is not None and self.num_jackknife_blocks < 1:
            raise ValueError(f"num_jackknife_blocks must be positive, got {self.num_jackknife_blocks}")
        if self.num_processes is not None and self.num_processes < 1:
            raise ValueError(f"num_processes must be positive, got {self.num_processes}")


class GraphREML(ParallelProcessor):

    @classmethod
    def _sum_blocks(cls, array: np.ndarray, shape_each_block: tuple) -> np.ndarray:
        # Ascending block order, independent of how blocks were split among workers
        array = array.reshape((-1, *shape_each_block))
        result = np.zeros(shape_each_block)
        for block in array:
            result += block
        return result

    @classmethod
    def prepare_block_data(cls, blocks: List[LDBlock], **kwargs) -> List[Dict[str, int]]:
        """Prepare block-specific data for processing.

        Args:
            blocks: Reconciled and filtered blocks
            **kwargs: Additional arguments from run(), including:
                method: MethodOptions instance containing method parameters

        Returns:
            List of dictionaries containing block-specific data with keys:
                block_index: Index of this block, determining its slot in shared memory
                variant_offset: Cumulative number of annotation rows before this block
                seed: Seed for the probe vectors of this block
        """
        method: MethodOptions = kwargs.get('method')
        num_rows = [block.annotations.shape[0] for block in blocks]
        variant_offsets = np.insert(np.cumsum(num_rows), 0, 0)[:-1]
        return [
            {
                'block_index': index,
                'variant_offset': int(offset),
                'seed': method.gradient_seed + index,
            }
            for index, offset in enumerate(variant_offsets)
        ]

    @staticmethod
    def create_shared_memory(blocks: List[LDBlock], block_data: list, **kwargs) -> SharedData:
        """Create output arrays.

        Args:
            blocks: Reconciled and filtered blocks
            block_data: Output of prepare_block_data
            **kwargs: num_params, and method options
        """
        num_params = kwargs.get('num_params')
        method: MethodOptions = kwargs.get('method')
        num_blocks = len(blocks)

        sizes = {
            'params': num_params,
            'likelihood': num_blocks,
            'gradient': num_blocks * num_params,
            'hessian': num_blocks * num_params ** 2,
        }
        if method.null_fit:
            num_variants = sum(block.annotations.shape[0] for block in blocks)
            sizes['variant_score'] = num_variants
            sizes['variant_hessian'] = num_variants

        return SharedData(sizes)

    @staticmethod
    def _effect_size_variance(
        block: LDBlock,
        link: SoftmaxLink,
        params: np.ndarray,
        with_gradient: bool,
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Per-variant heritability of each summary statistic variant, adding across the
        annotation rows mapped to it, and its gradient wrt the annotation coefficients."""
        sigmasq = np.bincount(block.annotation_to_sumstats,
                              weights=link(block.annotations, params),
                              minlength=block.num_sumstats)
        if not with_gradient:
            return sigmasq, None

        sigmasq_grad = np.zeros((block.num_sumstats, len(params)))
        np.add.at(sigmasq_grad, block.annotation_to_sumstats, link.grad(block.annotations, params))
        return sigmasq, sigmasq_grad

    @classmethod
    def process_block(cls, block: LDBlock,
                      flag: Value,
                      shared_data: SharedData,
                      block_data: Any = None,
                      worker_params: Tuple[ModelOptions, MethodOptions] = None):
        """Computes likelihood, gradient, and hessian for a single block.
        """
        model_options: ModelOptions
        method_options: MethodOptions
        model_options, method_options = worker_params

        link = SoftmaxLink(model_options.link_fn_denominator)
        params: np.ndarray = shared_data['params'].copy()
        num_params = len(params)
        annot_params = params[:block.num_annotations]
        intercept = model_options.intercept if model_options.fixed_intercept else params[-1]

        likelihood_only = (flag.value == FLAGS['COMPUTE_LIKELIHOOD_ONLY'])
        variant_stats = (flag.value == FLAGS['COMPUTE_VARIANT_STATS'])
        sigmasq, sigmasq_grad = cls._effect_size_variance(block, link, annot_params, not likelihood_only)

        result = block_likelihood(
            z=block.z,
            sigmasq=sigmasq,
            sigmasq_grad=sigmasq_grad,
            precision=block.precision,
            sumstats_indices=block.sumstats_indices,
            sample_size=model_options.sample_size,
            intercept=intercept,
            fixed_intercept=model_options.fixed_intercept,
            likelihood_only=likelihood_only,
            num_samples=method_options.gradient_num_samples,
            seed=block_data['seed'],
            trace_estimator=method_options.trace_estimator,
            node_stats=variant_stats,
        )

        block_index: int = block_data['block_index']
        shared_data['likelihood', block_index] = result.likelihood
        if likelihood_only:
            return

        gradient_slice = slice(block_index * num_params, (block_index + 1) * num_params)
        shared_data['gradient', gradient_slice] = result.gradient.ravel()

        hessian_slice = slice(block_index * num_params ** 2, (block_index + 1) * num_params ** 2)
        shared_data['hessian', hessian_slice] = result.hessian.ravel()

        if variant_stats:
            # Derivatives wrt the link function argument x_i of each annotation row
            del_h2i_del_xi, del2_h2i_del_xi2 = link.derivatives(block.annotations @ annot_params)
            node_gradient = result.node_gradient[block.annotation_to_sumstats]
            node_hessian = result.node_hessian[block.annotation_to_sumstats]
            offset = block_data['variant_offset']
            rows = slice(offset, offset + block.annotations.shape[0])
            shared_data['variant_score', rows] = del_h2i_del_xi * node_gradient
            shared_data['variant_hessian', rows] = (del2_h2i_del_xi2 * node_gradient
                                                    + del_h2i_del_xi ** 2 * node_hessian)

    @classmethod
    def _evaluate(cls, manager, shared_data: SharedData, params: np.ndarray, flag: int,
                  num_params: int) -> Tuple[float, Optional[np.ndarray], Optional[np.ndarray]]:
        """Objective (negative log-likelihood), and gradient and Hessian of the log-likelihood."""
        shared_data['params'] = params
        manager.start_workers(flag)
        manager.await_workers()

        objective = -cls._sum_blocks(shared_data['likelihood'], (1,))[0]
        if flag == FLAGS['COMPUTE_LIKELIHOOD_ONLY']:
            return objective, None, None
        gradient = cls._sum_blocks(shared_data['gradient'], (num_params,))
        hessian = cls._sum_blocks(shared_data['hessian'], (num_params, num_params))
        return objective, gradient, hessian

    @staticmethod
    def _trust_region_step(gradient: np.ndarray, hessian: np.ndarray, trust_region_lambda: float) -> np.ndarray:
        """Solves (H + λ diag(H) + c diag(|g|) + eps I) x = g; the candidate is params - x.
        The diag(|g|) term prevents singular systems."""
        hess_diag = np.diag(hessian)
        hess_mod = hessian + trust_region_lambda * np.diag(hess_diag)
        mean_abs_gradient = np.mean(np.abs(gradient))
        if mean_abs_gradient > 0:
            hess_mod = hess_mod + 1e-2 * trust_region_lambda * np.mean(hess_diag) / mean_abs_gradient \
                * np.diag(np.abs(gradient))
        hess_mod = hess_mod + np.finfo(float).eps * np.eye(len(gradient))
        return np.linalg.solve(hess_mod, gradient)

    @staticmethod
    def _damped_newton_step(gradient: np.ndarray, hessian: np.ndarray, ridge: float) -> np.ndarray:
        hess_diag = np.diag(hessian)
        hess_mod = hessian + ridge * np.diag(hess_diag) + 1e-2 * ridge * np.mean(hess_diag) * np.eye(len(gradient))
        return np.linalg.solve(hess_mod, gradient)

    @staticmethod
    def _step_quality(actual_change: float, predicted_change: float) -> float:
        """rho = |actual / predicted| change in the objective, or -1 if the objective did not decrease."""
        if not np.isfinite(actual_change) or actual_change > 0:
            return -1.0
        if predicted_change == 0:
            return 1.0 if actual_change == 0 else np.inf
        return abs(actual_change / predicted_change)

    @classmethod
    def _trust_region_search(cls, manager, shared_data, params, objective, gradient, hessian,
                             trust_region_lambda, method: MethodOptions, num_params: int):
        """Searches for an acceptable step.

        Returns:
            Tuple of (params, objective, trust_region_lambda, number of candidates, accepted)
        """
        gradient_norm = np.linalg.norm(gradient)
        accepted = False
        for trust_iter in range(method.max_trust_iterations):
            step = cls._trust_region_step(gradient, hessian, trust_region_lambda)
            candidate = params - step
            candidate_objective, _, _ = cls._evaluate(
                manager, shared_data, candidate, FLAGS['COMPUTE_LIKELIHOOD_ONLY'], num_params)

            actual_change = candidate_objective - objective
            predicted_change = step @ gradient - 0.5 * step @ (hessian @ step)
            rho = cls._step_quality(actual_change, predicted_change)
            if rho > 0 and method.delta_grad_check:
                _, candidate_gradient, _ = cls._evaluate(
                    manager, shared_data, candidate, FLAGS['COMPUTE_ALL'], num_params)
                if np.linalg.norm(candidate_gradient) > 2 * gradient_norm:
                    if method.verbose:
                        print("\tGradient changes too much. Reject step size.")
                    rho = -1.0

            if method.verbose:
                print(f"\tChange in objective: {actual_change}, predicted change: {predicted_change}, rho: {rho}")

            if rho > method.trust_region_rho_lb:
                accepted = True

            # Update the trust region penalty
            if rho < method.trust_region_rho_lb:
                trust_region_lambda *= method.trust_region_scalar
            elif rho > method.trust_region_rho_ub:
                trust_region_lambda /= method.trust_region_scalar

            if accepted:
                return candidate, candidate_objective, trust_region_lambda, trust_iter + 1, True

        logger.warning("After attempts to adjust step size, no step was accepted; "
                       "ignoring the gradient check")
        rho = cls._step_quality(actual_change, predicted_change)
        if rho > method.trust_region_rho_lb:
            return candidate, candidate_objective, trust_region_lambda, method.max_trust_iterations, True

        logger.warning("Leaving parameters unchanged at this iteration")
        return params, objective, trust_region_lambda, method.max_trust_iterations, False

    @classmethod
    def _damped_newton_search(cls, manager, shared_data, params, objective, gradient, hessian,
                              ridge, method: MethodOptions, num_params: int):
        """Damped Newton step, doubling the ridge while the objective increases.

        Returns:
            Tuple of (params, objective, ridge, number of candidates, accepted)
        """
        for attempt in range(method.max_trust_iterations + 1):
            if attempt > 0:
                ridge *= 2
                logger.warning(f"Objective function increased; increasing step size penalty to {ridge}")
            candidate = params - cls._damped_newton_step(gradient, hessian, ridge)
            candidate_objective, _, _ = cls._evaluate(
                manager, shared_data, candidate, FLAGS['COMPUTE_LIKELIHOOD_ONLY'], num_params)
            if candidate_objective - objective <= method.small_number:
                return candidate, candidate_objective, ridge, attempt + 1, True

        logger.warning(f"Objective function still increased after {method.max_trust_iterations} retries; "
                       f"leaving parameters unchanged at this iteration")
        return params, objective, ridge, method.max_trust_iterations + 1, False

    @classmethod
    def supervise(cls, manager, shared_data: SharedData, block_data: list, **kwargs):
        """Runs the trust region Newton optimizer, then computes per-block gradients and
        Hessians at the estimate.

        Args:
            manager: used to start parallel workers
            shared_data: used to communicate with workers
            block_data: output of prepare_block_data
            **kwargs: model, method, num_params

        Returns:
            Dictionary containing the estimate, the log-likelihood at the estimate, the
            iteration trace, per-block gradients and Hessians and, with null_fit,
            per-variant scores and Hessians
        """
        model: ModelOptions = kwargs.get('model')
        method: MethodOptions = kwargs.get('method')
        num_params: int = kwargs.get('num_params')
        verbose = method.verbose
        num_blocks = len(block_data)

        params = np.asarray(model.params, dtype=np.float64).copy()
        trust_region_lambda = method.trust_region_size
        trace = IterationTrace()
        converged = False

        for rep in range(method.num_iterations):
            if verbose:
                print(f"\n\tStarting iteration {rep}...")

            # Calculate likelihood, gradient, and hessian for each block
            start_time = time.perf_counter()
            objective, gradient, hessian = cls._evaluate(
                manager, shared_data, params, FLAGS['COMPUTE_ALL'], num_params)
            aggregation_time = time.perf_counter() - start_time

            start_time = time.perf_counter()
            if method.use_trust_region:
                if method.reset_trust_region:
                    trust_region_lambda = method.trust_region_size
                params, new_objective, trust_region_lambda, num_attempts, accepted = cls._trust_region_search(
                    manager, shared_data, params, objective, gradient, hessian,
                    trust_region_lambda, method, num_params)
            else:
                params, new_objective, trust_region_lambda, num_attempts, accepted = cls._damped_newton_search(
                    manager, shared_data, params, objective, gradient, hessian,
                    trust_region_lambda, method, num_params)
            step_time = time.perf_counter() - start_time

            trace.params.append(params.copy())
            trace.objective.append(new_objective)
            trace.gradient.append(gradient)
            trace.trust_region_lambda.append(trust_region_lambda)
            trace.num_step_attempts.append(num_attempts)
            trace.step_accepted.append(accepted)
            trace.time_aggregation.append(aggregation_time)
            trace.time_step.append(step_time)

            if verbose:
                print(f"log likelihood: {-new_objective}")
                print(f"Trust region lambda: {trust_region_lambda}")
                print(f"Parameters: {params}")
                if len(trace) >= 2:
                    print(f"Change in likelihood: {trace.objective[-2] - trace.objective[-1]}")

            # Check convergence
            history = trace.objective
            if len(history) > method.min_iterations:
                if history[-1 - method.min_iterations] - history[-1] < method.min_iterations * method.convergence_tol:
                    converged = True
                    break

        num_iterations = len(trace)
        logger.info(f"Finished optimization after {num_iterations} iterations "
                    f"({'converged' if converged else 'maximum number of iterations reached'})")

        # Block-wise gradients and Hessians at the estimate
        flag = FLAGS['COMPUTE_VARIANT_STATS'] if method.null_fit else FLAGS['COMPUTE_ALL']
        objective, _, _ = cls._evaluate(manager, shared_data, params, flag, num_params)
        gradient_blocks = shared_data['gradient'].reshape((num_blocks, num_params)).copy()
        hessian_blocks = shared_data['hessian'].reshape((num_blocks, num_params, num_params)).copy()

        variant_score = variant_hessian = None
        if method.null_fit:
            boundaries = [data['variant_offset'] for data in block_data[1:]]
            variant_score = np.split(shared_data['variant_score'].copy(), boundaries)
            variant_hessian = np.split(shared_data['variant_hessian'].copy(), boundaries)

        return {
            'params': params,
            'log_likelihood': -objective,
            'trace': trace,
            'converged': converged,
            'num_iterations': num_iterations,
            'gradient_blocks': gradient_blocks,
            'hessian_blocks': hessian_blocks,
            'variant_score': variant_score,
            'variant_hessian': variant_hessian,
        }


def _initial_params(model: ModelOptions, num_annotations: int, extra_param: Optional[float]) -> np.ndarray:
    if model.params is None:
        params = np.zeros(num_annotations)
    elif len(model.params) != num_annotations:
        raise ValueError(f"Got {len(model.params)} initial parameters for {num_annotations} annotations")
    else:
        params = model.params.copy()

    if extra_param is not None:
        params = np.append(params, extra_param)
    if not model.fixed_intercept:
        params = np.append(params, model.intercept)
    return params


def run_graphREML(blocks: List[LDBlock],
                  model_options: Optional[ModelOptions] = None,
                  method_options: Optional[MethodOptions] = None,
                  ) -> GraphREMLResult:
    """Estimates partitioned heritability from summary statistics and LD blocks.

    Args:
        blocks: LD blocks with their Z scores and annotations. The first annotation
            column must be all ones.
        model_options: ModelOptions; None -> defaults
        method_options: MethodOptions; None -> defaults

    Returns:
        GraphREMLResult containing:
        - estimated parameters, heritability and enrichment with standard errors and p-values
        - covariance matrices and convergence diagnostics
        - the iteration trace
        - the LD proxies used for variants without summary statistics
        - leave-one-block-out estimates
    """
    model = model_options or ModelOptions()
    method = method_options or MethodOptions()
    if not blocks:
        raise ValueError("No LD blocks were provided")

    blocks = [replace(block, block_id=i) for i, block in enumerate(blocks)]
    check_annotations(blocks)
    num_annotations = blocks[0].num_annotations
    if model.reference_column >= num_annotations:
        raise ValueError(f"reference_column {model.reference_column} is out of range "
                         f"for {num_annotations} annotations")

    policy = LargeEffectPolicy.from_name(model.large_effect_behavior)
    threshold = default_chisq_threshold(model.sample_size) if model.chisq_threshold is None \
        else model.chisq_threshold

    reconciled, proxies = reconcile_blocks(blocks)
    filtered = filter_blocks(reconciled, policy, threshold,
                             sample_size=model.sample_size,
                             link_fn_denominator=model.link_fn_denominator)
    retained = filtered.blocks
    if not retained:
        raise ValueError("No LD blocks remain after removing empty and large-effect blocks")
    logger.info(f"{len(retained)} LD blocks retained, {filtered.num_empty_blocks} empty, "
                f"{filtered.num_discarded_blocks} discarded")

    num_indices = sum(block.num_indices for block in retained)
    params = _initial_params(model, num_annotations, filtered.extra_param)
    model = replace(
        model,
        params=params,
        link_fn_denominator=model.link_fn_denominator or float(num_indices),
        chisq_threshold=threshold,
    )
    link = SoftmaxLink(model.link_fn_denominator)

    raw_annotations = [block.annotations for block in retained]
    fit_blocks = retained
    if model.normalize_annotations:
        annotation_sum = np.sum([annot.sum(axis=0) for annot in raw_annotations], axis=0)
        fit_blocks = [
            replace(block, annotations=num_indices * block.annotations / np.maximum(1, annotation_sum))
            for block in retained
        ]

    if method.verbose:
        z = np.concatenate([block.z for block in retained])
        print(f"Number of summary statistics: {len(z)}")
        print(f"Mean chisq: {np.mean(z ** 2)}")
        print(f"Max chisq: {np.max(z ** 2)}")

    run_fn = GraphREML.run_serial if method.run_serial else GraphREML.run
    fit = run_fn(
        fit_blocks,
        num_processes=method.num_processes,
        worker_params=(model, method),
        model=model,
        method=method,
        num_params=len(params),
    )

    fit_annotations = [block.annotations for block in fit_blocks]
    estimate, diagnostics, jackknife_params, jackknife_h2, groups = compute_inference(
        params=fit['params'],
        gradient_blocks=fit['gradient_blocks'],
        hessian_blocks=fit['hessian_blocks'],
        link=link,
        fit_annotations=fit_annotations,
        raw_annotations=raw_annotations,
        log_likelihood=fit['log_likelihood'],
        fixed_intercept=model.fixed_intercept,
        intercept=model.intercept,
        reference_column=model.reference_column,
        small_number=method.small_number,
        num_jackknife_blocks=method.num_jackknife_blocks,
    )
    diagnostics.converged = fit['converged']
    diagnostics.num_iterations = fit['num_iterations']

    jackknife = JackknifeRecord(
        params=jackknife_params,
        h2=jackknife_h2,
        block_ids=np.array([block.block_id for block in retained]),
        block_groups=groups,
        variant_score=fit['variant_score'],
        variant_hessian=fit['variant_hessian'],
    )

    if method.verbose:
        num_shown = min(5, estimate.num_annotations)
        print(f"Heritability: {estimate.h2[:num_shown]}")
        print(f"Enrichment: {estimate.enrichment[:num_shown]}")
        print(f"Enrichment p-values: {estimate.enrichment_pval[:num_shown]}")

    return GraphREMLResult(
        estimate=estimate,
        diagnostics=diagnostics,
        trace=fit['trace'],
        proxies=proxies,
        jackknife=jackknife,
        num_discarded_blocks=filtered.num_discarded_blocks,
        num_empty_blocks=filtered.num_empty_blocks,
        discarded_block_ids=filtered.discarded_block_ids,
        large_effect_annotation=filtered.large_effect_annotation,
    )
