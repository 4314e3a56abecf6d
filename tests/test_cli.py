"""Tests for the graphreml command line interface."""

import os

import h5py
import numpy as np
import polars as pl
from click.testing import CliRunner

from graphreml import load_blocks, save_blocks
from graphreml.cli import cli


def test_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['-h'])
    assert result.exit_code == 0
    assert 'reml' in result.output
    assert 'simulate' in result.output

    result = runner.invoke(cli, ['reml', '--help'])
    assert result.exit_code == 0
    assert '--large-effect-behavior' in result.output


def test_simulate_then_reml(tmp_path, simulated_blocks):
    blocks_path = str(tmp_path / "blocks.h5")
    simulated_path = str(tmp_path / "simulated.h5")
    prefix = str(tmp_path / "out")
    jackknife_path = str(tmp_path / "jackknife.h5")
    save_blocks(blocks_path, simulated_blocks)

    runner = CliRunner()
    result = runner.invoke(cli, ['simulate', blocks_path, simulated_path,
                                 '--params=-4,0.5', '-n', '10000', '--seed', '3'])
    assert result.exit_code == 0, result.output
    simulated = load_blocks(simulated_path)
    assert len(simulated) == len(simulated_blocks)
    assert not np.array_equal(simulated[0].z, simulated_blocks[0].z)

    result = runner.invoke(cli, ['reml', simulated_path, prefix, '-n', '10000',
                                 '--annotation-names', 'base,binary',
                                 '--null-fit', '--jackknife-h5', jackknife_path, '--name', 'trait'])
    assert result.exit_code == 0, result.output
    assert 'Converged' in result.output

    estimates = pl.read_csv(f"{prefix}.estimates.tsv", separator='\t')
    assert estimates['annotation'].to_list() == ['base', 'binary']
    assert os.path.exists(f"{prefix}.convergence.tsv")
    assert os.path.exists(f"{prefix}.proxies.tsv")
    assert os.path.exists(f"{prefix}.log")
    with h5py.File(jackknife_path, 'r') as f:
        assert 'trait' in f['traits']
        assert 'gradient' in f['traits/trait']


def test_reml_quiet(tmp_path, simulated_blocks):
    blocks_path = str(tmp_path / "blocks.h5")
    save_blocks(blocks_path, simulated_blocks)
    result = CliRunner().invoke(cli, ['reml', blocks_path, str(tmp_path / "out"), '-n', '10000',
                                      '--large-effect-behavior', 'discard', '-q'])
    assert result.exit_code == 0, result.output
    assert 'Converged' not in result.output


def test_reml_missing_file(tmp_path):
    result = CliRunner().invoke(cli, ['reml', str(tmp_path / "missing.h5"), 'out', '-n', '1000'])
    assert result.exit_code != 0
