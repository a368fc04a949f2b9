"""Tests for configuration loading, validation and CLI merging."""

import argparse
import json
from pathlib import Path

import pytest
import yaml

from netpreserve.config import (
    DEFAULT_POWERS,
    ModuleDetectionConfig,
    PipelineConfig,
    explicit_cli_args,
    load_config,
    merge_config_with_args,
    validate_config,
)


class TestDefaults:
    def test_pipeline_defaults(self):
        config = PipelineConfig()
        assert config.network.power is None
        assert config.network.overlap == "min"
        assert config.modules.min_module_size == 200
        assert config.modules.merge_height == 0.25
        assert config.preservation.n_permutations == 200
        assert config.simulation.noise_factors == (0.05, 0.1, 0.25, 0.5, 1.0)

    def test_submodule_defaults_differ(self):
        sub = ModuleDetectionConfig.submodule()
        assert sub.min_module_size == 1
        assert sub.merge_height == 0.05
        assert ModuleDetectionConfig.submodule(merge_height=0.1).merge_height == 0.1

    def test_default_powers(self):
        assert DEFAULT_POWERS[:10] == tuple(range(1, 11))
        assert DEFAULT_POWERS[10:] == (12, 14, 16, 18, 20)


class TestFromDict:
    def test_partial_sections(self):
        config = PipelineConfig.from_dict({
            'network': {'power': 8, 'adjacency_type': 'signed'},
            'submodules': {'min_module_size': 3},
            'simulation': {'noise_factors': [0.1, 0.2]},
        })
        assert config.network.power == 8
        assert config.network.adjacency_type == 'signed'
        assert config.submodules.min_module_size == 3
        # Unspecified submodule fields keep submodule defaults
        assert config.submodules.merge_height == 0.05
        assert config.simulation.noise_factors == (0.1, 0.2)

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown config sections"):
            PipelineConfig.from_dict({'netwrk': {}})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown keys"):
            PipelineConfig.from_dict({'modules': {'min_size': 10}})

    def test_checkpoint_dir_becomes_path(self):
        config = PipelineConfig.from_dict({'preservation': {'checkpoint_dir': 'ckpt'}})
        assert config.preservation.checkpoint_dir == Path('ckpt')
        assert config.to_dict()['preservation']['checkpoint_dir'] == 'ckpt'


class TestValidateConfig:
    @pytest.mark.parametrize("config, match", [
        ({'network': {'power': -1}}, "power"),
        ({'network': {'adjacency_type': 'absolute'}}, "adjacency type"),
        ({'network': {'overlap': 'max'}}, "overlap"),
        ({'modules': {'deep_split': 7}}, "deep_split"),
        ({'preservation': {'n_permutations': 0}}, "n_permutations"),
        ({'preservation': {'min_module_size': 2}}, "min_module_size"),
        ({'simulation': {'hub_quantile': 1.0}}, "hub_quantile"),
        ({'simulation': {'imbalance_fraction': 0}}, "imbalance_fraction"),
        ({'simulation': {'scenarios': ['chaos']}}, "scenario"),
    ])
    def test_rejects_invalid(self, config, match):
        with pytest.raises(ValueError, match=match):
            validate_config(config)

    def test_accepts_valid(self):
        validate_config({
            'network': {'power': 6, 'overlap': 'product'},
            'modules': {'min_module_size': 30, 'reassign_threshold': None},
            'simulation': {'scenarios': ['control'], 'hub_quantile': 0.9},
        })


class TestLoadConfig:
    def test_yaml(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump({'network': {'power': 4}}))
        assert load_config(path) == {'network': {'power': 4}}

    def test_json(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({'preservation': {'seed': 7}}))
        assert load_config(path) == {'preservation': {'seed': 7}}

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "run.toml"
        path.write_text("x = 1")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)


class TestMergeConfigWithArgs:
    MAPPING = {
        'power': ('network', 'power'),
        'n_permutations': ('preservation', 'n_permutations'),
        'noise_factors': ('simulation', 'noise_factors'),
    }

    def test_cli_overrides_file(self):
        config = PipelineConfig.from_dict({'network': {'power': 4}})
        args = argparse.Namespace(power=8.0, n_permutations=None, noise_factors=[0.1, 0.3])
        merged = merge_config_with_args(config, args, self.MAPPING)
        assert merged.network.power == 8.0
        assert merged.preservation.n_permutations == 200
        assert merged.simulation.noise_factors == (0.1, 0.3)

    def test_only_explicit_args_with_argv(self):
        config = PipelineConfig.from_dict({'network': {'power': 4}})
        args = argparse.Namespace(power=8.0, n_permutations=50, noise_factors=None)
        merged = merge_config_with_args(
            config, args, self.MAPPING, cli_args=['--n-permutations', '50']
        )
        assert merged.network.power == 4
        assert merged.preservation.n_permutations == 50

    def test_explicit_cli_args(self):
        assert explicit_cli_args(['--power=6', '-v', '--n-permutations', '10']) == {
            'power', 'n_permutations'
        }
