"""Command line interface for graphREML."""

import logging
import sys
import time

import click
import numpy as np

from .heritability import MethodOptions, ModelOptions, run_graphREML
from .io import load_blocks, save_blocks, write_jackknife_hdf5, write_results
from .simulate import simulate_blocks

logger = logging.getLogger(__name__)


def _setup_logging(output_prefix, verbose: bool, quiet: bool = False):
    """Set up logging configuration."""
    log_format = '%(levelname)s %(module)s - %(funcName)s: %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'

    handlers = []
    if output_prefix:
        handlers.append(logging.FileHandler(f"{output_prefix}.log"))
    if verbose or quiet:
        handlers.append(logging.StreamHandler(sys.stdout))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.ERROR if quiet else logging.INFO,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def _parse_floats(value):
    if value is None:
        return None
    return np.array([float(x) for x in value.split(',')])


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
def cli():
    """Partitioned heritability from GWAS summary statistics and LD precision matrices.

    Commands:
        reml      Estimate heritability and enrichment with graphREML
        simulate  Replace the Z scores of a block file with simulated ones
    """
    pass


@cli.command(name="reml", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("blocks_h5", type=click.Path(exists=True))
@click.argument("out_prefix")
@click.option("-n", "--sample-size", type=float, required=True, help="GWAS sample size.")
@click.option("--intercept", type=float, default=1.0, show_default=True,
              help="Value of the intercept, or its starting value with --free-intercept.")
@click.option("--free-intercept", is_flag=True, help="Estimate the intercept.")
@click.option("--normalize-annotations", is_flag=True,
              help="Rescale annotations to sum to the number of variants before fitting.")
@click.option("--reference-column", type=int, default=0, show_default=True,
              help="Annotation used as the reference for enrichment.")
@click.option("--large-effect-behavior", default="keep", show_default=True,
              type=click.Choice(['keep', 'discard', 'annotateSNP', 'annotateSNP_linear', 'annotateBlock'],
                                case_sensitive=False),
              help="How to handle blocks containing a variant with a large chi^2 statistic.")
@click.option("--chisq-threshold", type=float, default=None,
              help="chi^2 threshold for large effects [default: max(0.001 n, 80)].")
@click.option("--params", "initial_params", default=None,
              help="Comma-separated starting values of the annotation coefficients.")
@click.option("--num-iterations", type=int, default=100, show_default=True)
@click.option("--convergence-tol", type=float, default=1e-1, show_default=True)
@click.option("--no-trust-region", is_flag=True, help="Use damped Newton steps instead of a trust region.")
@click.option("--gradient-num-samples", type=int, default=0, show_default=True,
              help="Probe vectors for the stochastic trace estimator; 0 computes the trace exactly.")
@click.option("--trace-estimator", type=click.Choice(['hutchinson', 'xdiag']),
              default='hutchinson', show_default=True)
@click.option("--seed", type=int, default=123, show_default=True, help="Seed for the probe vectors.")
@click.option("--num-jackknife-blocks", type=int, default=None,
              help="Number of jackknife groups of contiguous blocks [default: one per block].")
@click.option("--null-fit", is_flag=True, help="Save per-variant scores for downstream score tests.")
@click.option("--annotation-names", default=None, help="Comma-separated annotation names.")
@click.option("--jackknife-h5", type=click.Path(), default=None,
              help="HDF5 file to which jackknife estimates are added.")
@click.option("--name", "trait_name", default=None,
              help="Trait name within --jackknife-h5 [default: output prefix].")
@click.option("-p", "--num-processes", type=int, default=None,
              help="Number of worker processes; runs in serial if not given.")
@click.option("-v", "--verbose", is_flag=True, help="Print progress.")
@click.option("-q", "--quiet", is_flag=True, help="Only print errors.")
def reml(blocks_h5, out_prefix, sample_size, intercept, free_intercept, normalize_annotations,
         reference_column, large_effect_behavior, chisq_threshold, initial_params, num_iterations,
         convergence_tol, no_trust_region, gradient_num_samples, trace_estimator, seed,
         num_jackknife_blocks, null_fit, annotation_names, jackknife_h5, trait_name,
         num_processes, verbose, quiet):
    """Estimate heritability and enrichment from BLOCKS_H5, writing tables to OUT_PREFIX.*"""
    _setup_logging(out_prefix, verbose, quiet)
    logger.info(f"Command: {' '.join(sys.argv)}")
    start_time = time.time()

    blocks = load_blocks(blocks_h5)
    logger.info(f"Loaded {len(blocks)} LD blocks from {blocks_h5}")

    model_options = ModelOptions(
        sample_size=sample_size,
        params=_parse_floats(initial_params),
        intercept=intercept,
        fixed_intercept=not free_intercept,
        normalize_annotations=normalize_annotations,
        reference_column=reference_column,
        large_effect_behavior=large_effect_behavior,
        chisq_threshold=chisq_threshold,
    )
    method_options = MethodOptions(
        num_iterations=num_iterations,
        convergence_tol=convergence_tol,
        use_trust_region=not no_trust_region,
        gradient_num_samples=gradient_num_samples,
        gradient_seed=seed,
        trace_estimator=trace_estimator,
        num_jackknife_blocks=num_jackknife_blocks,
        null_fit=null_fit,
        run_serial=num_processes is None,
        num_processes=num_processes,
        verbose=verbose and not quiet,
    )

    result = run_graphREML(blocks, model_options, method_options)

    names = annotation_names.split(',') if annotation_names else None
    paths = write_results(out_prefix, result, names)
    for path in paths:
        logger.info(f"Wrote {path}")

    if jackknife_h5:
        write_jackknife_hdf5(jackknife_h5, result, trait_name or out_prefix)
        logger.info(f"Added trait {trait_name or out_prefix} to {jackknife_h5}")

    if not quiet:
        click.echo(f"Converged: {result.diagnostics.converged} "
                   f"after {result.diagnostics.num_iterations} iterations")
        click.echo(f"Total heritability: {result.estimate.h2[0]:.4g} (SE {result.estimate.h2_jackknife_se[0]:.4g})")
    logger.info(f"Time to run graphREML: {time.time() - start_time:.2f}s")


@cli.command(name="simulate", context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("blocks_h5", type=click.Path(exists=True))
@click.argument("out_h5")
@click.option("--params", "params", required=True,
              help="Comma-separated annotation coefficients.")
@click.option("-n", "--sample-size", type=float, required=True, help="GWAS sample size.")
@click.option("--intercept", type=float, default=1.0, show_default=True)
@click.option("--link-fn-denominator", type=float, default=None,
              help="Denominator of the link function [default: total number of variants].")
@click.option("--seed", type=int, default=None, help="Random seed.")
def simulate(blocks_h5, out_h5, params, sample_size, intercept, link_fn_denominator, seed):
    """Simulate Z scores for the blocks in BLOCKS_H5 and write them to OUT_H5."""
    blocks = load_blocks(blocks_h5)
    simulated = simulate_blocks(blocks, _parse_floats(params), sample_size,
                                intercept=intercept,
                                link_fn_denominator=link_fn_denominator,
                                seed=seed)
    save_blocks(out_h5, simulated)
    click.echo(f"Simulated {len(simulated)} blocks to {out_h5}")


def main():
    cli()


if __name__ == '__main__':
    main()
