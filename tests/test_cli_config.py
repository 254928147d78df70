"""
Tests for CLI config handling and end-to-end subcommand runs.

Config precedence: explicit CLI flag > config file > argparse default.
"""

import json
from argparse import Namespace
from pathlib import Path

import pandas as pd
import pytest
import yaml

from scdiffstate.cli import main
from scdiffstate.cli.config import (
    explicit_arguments,
    load_config,
    merge_config_with_args,
    validate_config,
)


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "ds.yaml"
        path.write_text("pseudobulk:\n  method: limma-trend\n  min_cells: 5\n")
        assert load_config(path) == {'pseudobulk': {'method': 'limma-trend', 'min_cells': 5}}

    def test_json(self, tmp_path):
        path = tmp_path / "ds.json"
        path.write_text(json.dumps({'mixed': {'ddf': 'residual'}}))
        assert load_config(path)['mixed']['ddf'] == 'residual'

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "ds.toml"
        path.write_text("x = 1\n")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("pseudobulk: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(path)


class TestValidateConfig:

    def test_valid(self):
        validate_config({
            'input': 'counts.csv',
            'labels': {'sample_id': 'patient'},
            'pseudobulk': {'method': 'qlnb', 'min_cells': 3},
            'mixed': {'method': 'vst', 'ddf': 'between-within'},
        })

    @pytest.mark.parametrize("config,match", [
        ({'inputs': 'x'}, "Unknown config keys"),
        ({'pseudobulk': {'min_cell': 3}}, "Unknown keys in 'pseudobulk'"),
        ({'pseudobulk': {'method': 'edgeR'}}, "pseudobulk.method"),
        ({'mixed': {'ddf': 'kenward-roger'}}, "mixed.ddf"),
        ({'labels': {'donor_id': 'patient'}}, "Unknown labels"),
        ({'mixed': 'dream'}, "must be a mapping"),
    ])
    def test_invalid(self, config, match):
        with pytest.raises(ValueError, match=match):
            validate_config(config)


class TestMerge:

    def _args(self, **overrides):
        defaults = dict(
            input=None, metadata=None, output=None, sample_col='sample_id',
            method='qlnb', min_cells=10, fdr_method='BH',
        )
        defaults.update(overrides)
        return Namespace(**defaults)

    def test_explicit_arguments(self):
        explicit = explicit_arguments(['--min-cells', '3', '-o', 'out', '--fdr-method=BY', '-v'])
        assert explicit == {'min_cells', 'output', 'fdr_method'}

    def test_config_fills_defaults(self):
        config = {'input': 'counts.csv', 'pseudobulk': {'method': 'limma-trend'}}
        merged = merge_config_with_args(config, self._args(), [], section='pseudobulk')
        assert merged.input == Path('counts.csv')
        assert merged.method == 'limma-trend'
        assert merged.min_cells == 10

    def test_explicit_cli_wins(self):
        config = {'pseudobulk': {'min_cells': 3, 'method': 'limma-trend'}}
        args = self._args(min_cells=7)
        merged = merge_config_with_args(config, args, ['--min-cells', '7'], section='pseudobulk')
        assert merged.min_cells == 7
        assert merged.method == 'limma-trend'

    def test_other_sections_ignored(self):
        config = {'mixed': {'method': 'dream'}}
        merged = merge_config_with_args(config, self._args(), [], section='pseudobulk')
        assert merged.method == 'qlnb'

    def test_labels_map_to_column_options(self):
        config = {'labels': {'sample_id': 'patient'}}
        merged = merge_config_with_args(config, self._args(), [], section='pseudobulk')
        assert merged.sample_col == 'patient'

    def test_input_namespace_untouched(self):
        args = self._args()
        merge_config_with_args({'pseudobulk': {'method': 'limma-trend'}}, args, [], 'pseudobulk')
        assert args.method == 'qlnb'


@pytest.fixture
def simulated(tmp_path):
    out = tmp_path / "sim"
    code = main([
        'simulate', '--output', str(out),
        '--n-genes', '30', '--n-cells-per-sample', '25', '--n-clusters', '2',
        '--n-samples-per-group', '3',
        '--de-gene', 'cluster1', 'gene003', '--seed', '3',
    ])
    assert code == 0
    return out


class TestCommands:

    def test_simulate_writes_pair(self, simulated):
        counts = pd.read_csv(simulated / "counts.csv", index_col=0)
        cells = pd.read_csv(simulated / "cells.csv", index_col=0)
        assert counts.shape == (30, 300)
        assert list(cells.index) == list(counts.columns)
        assert set(cells['group_id']) == {'A', 'B'}

    def test_aggregate(self, simulated, tmp_path):
        out = tmp_path / "pb"
        code = main([
            'aggregate', '-i', str(simulated / "counts.csv"),
            '-m', str(simulated / "cells.csv"), '-o', str(out),
        ])
        assert code == 0
        frame = pd.read_csv(out / "cluster1.tsv", sep='\t', index_col='gene')
        assert frame.shape == (30, 6)

    def test_pseudobulk(self, simulated, tmp_path):
        out = tmp_path / "ds"
        code = main([
            'pseudobulk', '-i', str(simulated / "counts.csv"),
            '-m', str(simulated / "cells.csv"), '-o', str(out),
            '--frequencies', '--means',
        ])
        assert code == 0
        combined = pd.read_csv(out / "results.tsv", sep='\t')
        assert {'gene', 'cluster_id', 'p_adj.loc', 'A1.frq', 'A1.cpm'} <= set(combined.columns)
        assert (out / "group_idB.tsv").exists()
        assert (out / "exclusions.tsv").exists()

    def test_pseudobulk_from_config(self, simulated, tmp_path):
        out = tmp_path / "cfg"
        config = tmp_path / "ds.yaml"
        config.write_text(yaml.safe_dump({
            'input': str(simulated / "counts.csv"),
            'metadata': str(simulated / "cells.csv"),
            'output': str(out),
            'pseudobulk': {'method': 'limma-trend', 'bind': 'col'},
        }))
        assert main(['pseudobulk', '--config', str(config)]) == 0
        combined = pd.read_csv(out / "results.tsv", sep='\t')
        assert 'logFC.group_idB' in combined.columns

    def test_mixed(self, simulated, tmp_path):
        out = tmp_path / "mm"
        code = main([
            'mixed', '-i', str(simulated / "counts.csv"),
            '-m', str(simulated / "cells.csv"), '-o', str(out),
            '--method', 'vst', '--ddf', 'between-within',
        ])
        assert code == 0
        combined = pd.read_csv(out / "results.tsv", sep='\t')
        assert set(combined['df']) == {4.0}

    def test_missing_output_fails(self, simulated):
        code = main([
            'pseudobulk', '-i', str(simulated / "counts.csv"),
            '-m', str(simulated / "cells.csv"),
        ])
        assert code == 1

    def test_missing_input_file_fails(self, tmp_path):
        code = main(['pseudobulk', '-i', str(tmp_path / "x.csv"),
                     '-m', str(tmp_path / "y.csv"), '-o', str(tmp_path / "o")])
        assert code == 1

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "scdiffstate" in capsys.readouterr().out
