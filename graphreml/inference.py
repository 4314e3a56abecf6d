"""Standard errors and hypothesis tests for graphREML estimates.

Three covariance estimators are computed from the per-block gradients and Hessians at
the estimate: model-based (inverse Fisher information), sandwich, and jackknife. They are
propagated to annotation heritabilities and enrichments with the delta method.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
import scipy.stats as sps

from .link import SoftmaxLink
from .results import Diagnostics, Estimate

logger = logging.getLogger(__name__)


def group_blocks(blocks: np.ndarray, num_groups: int) -> np.ndarray:
    """Group blocks into a smaller number of groups of contiguous blocks.

    Args:
        blocks: Array of shape (num_blocks, *block_shape)
        num_groups: Number of groups to create

    Returns:
        Array of shape (num_groups, *block_shape) containing summed blocks
    """
    num_blocks = blocks.shape[0]
    if not 0 < num_groups <= num_blocks:
        raise ValueError(f"Cannot split {num_blocks} blocks into {num_groups} groups")
    block_size = num_blocks // num_groups
    remainder = num_blocks % num_groups

    grouped = np.zeros((num_groups,) + blocks.shape[1:])

    start_idx = 0
    for i in range(num_groups):
        # Add one extra block to some groups to handle remainder
        extra = 1 if i < remainder else 0
        end_idx = start_idx + block_size + extra
        grouped[i, ...] = blocks[start_idx:end_idx, ...].sum(axis=0)
        start_idx = end_idx

    return grouped


def block_groups(num_blocks: int, num_groups: int) -> np.ndarray:
    """Group to which each block is assigned by group_blocks."""
    sizes = group_blocks(np.ones(num_blocks, dtype=int), num_groups).astype(int)
    return np.repeat(np.arange(num_groups), sizes)


def pseudojackknife(gradient_blocks: np.ndarray, hessian_blocks: np.ndarray, params: np.ndarray) -> np.ndarray:
    """One-step Newton approximation to the estimate with each block left out.

    Args:
        gradient_blocks: Array of shape (num_blocks, num_params) containing block-wise gradients
        hessian_blocks: Array of shape (num_blocks, num_params, num_params) containing block-wise Hessians
        params: Array of shape (num_params,) containing parameter values

    Returns:
        Array of shape (num_blocks, num_params) containing jackknife parameter estimates
    """
    num_blocks = gradient_blocks.shape[0]
    num_params = params.shape[0]

    gradient = gradient_blocks.sum(axis=0)
    hessian = hessian_blocks.sum(axis=0)

    jackknife = np.zeros((num_blocks, num_params))
    for block in range(num_blocks):
        loo_hessian = hessian - hessian_blocks[block] + 1e-12 * np.eye(num_params)
        jackknife[block] = params + np.linalg.solve(loo_hessian, gradient_blocks[block] - gradient)

    return jackknife


def jackknife_covariance(jackknife_params: np.ndarray) -> np.ndarray:
    """(B - 2) times the covariance of the deleted estimates; NaN with fewer than 3 blocks."""
    num_blocks, num_params = jackknife_params.shape
    if num_blocks < 3:
        logger.warning(f"Jackknife covariance requires at least 3 blocks, got {num_blocks}")
        return np.full((num_params, num_params), np.nan)
    return np.atleast_2d(np.cov(jackknife_params, rowvar=False)) * (num_blocks - 2)


def naive_covariance(hessian: np.ndarray, small_number: float = 1e-6) -> np.ndarray:
    """Inverse of the Fisher information, which is approximated as minus the Hessian."""
    fisher_information = -hessian
    if np.any(np.diag(fisher_information) == 0):
        logger.warning("Some parameters have zero fisher information. "
                       "Regularizing FI matrix to obtain standard errors.")
        fisher_information = fisher_information + small_number * np.eye(fisher_information.shape[0])
    return np.linalg.pinv(fisher_information)


def sandwich_covariance(naive_cov: np.ndarray, gradient_blocks: np.ndarray) -> np.ndarray:
    """Huber-White covariance, with the variance of the score estimated across blocks."""
    num_blocks, num_params = gradient_blocks.shape
    if num_blocks < 2:
        logger.warning(f"Sandwich covariance requires at least 2 blocks, got {num_blocks}")
        return np.full((num_params, num_params), np.nan)
    score_variance = np.atleast_2d(np.cov(gradient_blocks, rowvar=False)) * num_blocks
    return naive_cov @ (score_variance @ naive_cov)


def two_tailed_pvalue(estimate: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """Two-tailed normal p-value of each entry of estimate."""
    with np.errstate(divide='ignore', invalid='ignore'):
        z = np.asarray(estimate) / np.sqrt(np.diag(covariance))
    return 2 * sps.norm.sf(np.abs(z))


def enrichment_pvalue(
    h2: np.ndarray,
    h2_cov: np.ndarray,
    annotation_proportion: np.ndarray,
    reference_column: int = 0,
) -> np.ndarray:
    """Tests whether h2_k / p_k differs from h2_r / p_r, p being annotation proportions.

    Returns:
        Two-tailed p-value for each annotation; 1 for the reference annotation
    """
    r = reference_column
    p = np.asarray(annotation_proportion, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        difference = h2 / p - h2[r] / p[r]
        variance = (np.diag(h2_cov) / p ** 2 + h2_cov[r, r] / p[r] ** 2
                    - 2 * h2_cov[:, r] / (p * p[r]))
        z = difference / np.sqrt(variance)
    pval = 2 * sps.norm.sf(np.abs(z))
    pval[r] = 1.0
    return pval


def annotation_heritability(
    link: SoftmaxLink,
    fit_annotations: List[np.ndarray],
    raw_annotations: List[np.ndarray],
    params: np.ndarray,
) -> np.ndarray:
    """sum_i h2_i a_ik for each annotation k, summed across blocks."""
    return sum(
        raw.T @ link(fit, params)
        for fit, raw in zip(fit_annotations, raw_annotations)
    )


def heritability_jacobians(
    link: SoftmaxLink,
    annotations: np.ndarray,
    raw_annotations: np.ndarray,
    params: np.ndarray,
    reference_column: int = 0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Annotation heritabilities and enrichments with their Jacobians wrt the parameters.

    Args:
        link: Link function
        annotations: Annotations used in the link function, all blocks stacked
        raw_annotations: Annotations as provided, all blocks stacked
        params: Annotation coefficients
        reference_column: Reference annotation for enrichment

    Returns:
        Tuple containing:
            - h2, shape (num_annotations,)
            - Jacobian of h2, shape (num_annotations, num_params)
            - enrichment, shape (num_annotations,)
            - Jacobian of enrichment, shape (num_annotations, num_params); the
              reference row is the gradient of the total link function value
    """
    r = reference_column
    link_val = link(annotations, params)
    link_jacobian = link.grad(annotations, params)
    annotation_sum = raw_annotations.sum(axis=0)

    h2 = raw_annotations.T @ link_val
    h2_jacobian = raw_annotations.T @ link_jacobian

    with np.errstate(divide='ignore', invalid='ignore'):
        size_ratio = annotation_sum[r] / annotation_sum
        enrichment = size_ratio * h2 / h2[r]
        enrichment_jacobian = size_ratio[:, np.newaxis] * (
            h2_jacobian * h2[r] - np.outer(h2, h2_jacobian[r])
        ) / h2[r] ** 2
    enrichment[r] = 1.0
    enrichment_jacobian[r] = link_jacobian.sum(axis=0)

    return h2, h2_jacobian, enrichment, enrichment_jacobian


def _standard_errors(jacobian: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    return np.sqrt(np.diag(jacobian @ covariance @ jacobian.T))


def compute_inference(
    params: np.ndarray,
    gradient_blocks: np.ndarray,
    hessian_blocks: np.ndarray,
    link: SoftmaxLink,
    fit_annotations: List[np.ndarray],
    raw_annotations: List[np.ndarray],
    log_likelihood: float,
    fixed_intercept: bool = True,
    intercept: float = 1.0,
    reference_column: int = 0,
    small_number: float = 1e-6,
    num_jackknife_blocks: Optional[int] = None,
) -> Tuple[Estimate, Diagnostics, np.ndarray, np.ndarray, np.ndarray]:
    """Standard errors and p-values at the estimate.

    Args:
        params: Estimated parameters, including the intercept if it is free
        gradient_blocks: Gradient of each block at the estimate, shape (num_blocks, num_params)
        hessian_blocks: Hessian of each block at the estimate,
            shape (num_blocks, num_params, num_params)
        link: Link function
        fit_annotations: Annotations used in the link function, one array per block
        raw_annotations: Annotations as provided, one array per block
        log_likelihood: Log-likelihood at the estimate
        fixed_intercept: Whether the intercept was fixed
        intercept: Value of the intercept if fixed
        reference_column: Reference annotation for enrichment
        small_number: Regularization for zero Fisher information
        num_jackknife_blocks: Number of groups of contiguous blocks for the jackknife;
            None uses one group per block

    Returns:
        Tuple containing:
            - Estimate
            - Diagnostics
            - Jackknife parameter estimates, shape (num_jackknife_blocks, num_params)
            - Annotation heritability at each jackknife estimate
            - Jackknife group of each block
    """
    num_blocks, num_params = gradient_blocks.shape
    num_annot = num_params if fixed_intercept else num_params - 1

    num_groups = num_blocks if num_jackknife_blocks is None else min(num_jackknife_blocks, num_blocks)
    groups = block_groups(num_blocks, num_groups)
    jackknife_params = pseudojackknife(
        group_blocks(gradient_blocks, num_groups),
        group_blocks(hessian_blocks, num_groups),
        params,
    )

    hessian = hessian_blocks.sum(axis=0)
    naive_cov = naive_covariance(hessian, small_number)
    sandwich_cov = sandwich_covariance(naive_cov, gradient_blocks)
    jackknife_cov = jackknife_covariance(jackknife_params)

    if fixed_intercept:
        intercept_ses = (0.0, 0.0, 0.0)
    else:
        intercept = float(params[-1])
        intercept_ses = tuple(float(np.sqrt(cov[-1, -1])) for cov in (naive_cov, sandwich_cov, jackknife_cov))
        naive_cov = naive_cov[:num_annot, :num_annot]
        sandwich_cov = sandwich_cov[:num_annot, :num_annot]
        jackknife_cov = jackknife_cov[:num_annot, :num_annot]

    annot_params = params[:num_annot]
    stacked_annotations = np.vstack(fit_annotations)
    stacked_raw = np.vstack(raw_annotations)
    h2, h2_jacobian, enrichment, enrichment_jacobian = heritability_jacobians(
        link, stacked_annotations, stacked_raw, annot_params, reference_column)
    annotation_sum = stacked_raw.sum(axis=0)
    annotation_proportion = stacked_raw.mean(axis=0)

    covariances = (naive_cov, sandwich_cov, jackknife_cov)
    h2_covs = [h2_jacobian @ cov @ h2_jacobian.T for cov in covariances]
    param_ses = [np.sqrt(np.diag(cov)) for cov in covariances]
    coef_pvals = [two_tailed_pvalue(annot_params, cov) for cov in covariances]
    h2_ses = [np.sqrt(np.diag(cov)) for cov in h2_covs]
    enrichment_ses = [_standard_errors(enrichment_jacobian, cov) for cov in covariances]
    enrichment_pvals = [enrichment_pvalue(h2, cov, annotation_proportion, reference_column)
                        for cov in h2_covs]

    estimate = Estimate(
        params=annot_params.copy(),
        h2=h2,
        annotation_sum=annotation_sum,
        annotation_proportion=annotation_proportion,
        enrichment=enrichment,
        log_likelihood=log_likelihood,
        param_se=param_ses[0],
        param_sandwich_se=param_ses[1],
        param_jackknife_se=param_ses[2],
        coef_pval=coef_pvals[0],
        coef_sandwich_pval=coef_pvals[1],
        coef_jackknife_pval=coef_pvals[2],
        h2_se=h2_ses[0],
        h2_sandwich_se=h2_ses[1],
        h2_jackknife_se=h2_ses[2],
        enrichment_se=enrichment_ses[0],
        enrichment_sandwich_se=enrichment_ses[1],
        enrichment_jackknife_se=enrichment_ses[2],
        enrichment_pval=enrichment_pvals[0],
        enrichment_sandwich_pval=enrichment_pvals[1],
        enrichment_jackknife_pval=enrichment_pvals[2],
        intercept=intercept,
        intercept_se=intercept_ses[0],
        intercept_sandwich_se=intercept_ses[1],
        intercept_jackknife_se=intercept_ses[2],
    )

    diagnostics = Diagnostics(
        param_cov=naive_cov,
        param_sandwich_cov=sandwich_cov,
        param_jackknife_cov=jackknife_cov,
        h2_cov=h2_covs[0],
        h2_sandwich_cov=h2_covs[1],
        h2_jackknife_cov=h2_covs[2],
        num_blocks=num_blocks,
    )

    jackknife_h2 = np.vstack([
        annotation_heritability(link, fit_annotations, raw_annotations, jk_params[:num_annot])
        for jk_params in jackknife_params
    ])

    return estimate, diagnostics, jackknife_params, jackknife_h2, groups
