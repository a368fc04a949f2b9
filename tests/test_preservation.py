"""
Tests for the preservation statistic battery and the permutation engine.

Scenarios:
    - Identical comparison: a strong module is strongly preserved
    - Pure-noise comparison: no preservation signal
    - Gene order, worker count and checkpoint reloads do not change scores
    - Checkpoints written under other data or settings are recomputed
    - Missing genes and too-small modules are reported, not raised
"""

import json
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from netpreserve.config import NetworkConfig, PreservationConfig
from netpreserve.exceptions import DimensionMismatchError
from netpreserve.network.modules import ModuleAssignment
from netpreserve.network.similarity import standardize_rows
from netpreserve.preservation.engine import (
    PreservationEngine,
    comparison_key,
    prepare_pool,
)
from netpreserve.preservation.records import (
    DatasetRole,
    PreservationRecord,
    TaggedDataset,
)
from netpreserve.preservation.statistics import (
    STATISTICS,
    NetworkParams,
    battery,
    permutation_null,
    score_gene_set,
    zscore,
)
from netpreserve.simulation.duplication import DuplicationTransform

FAST = PreservationConfig(n_permutations=40, min_module_size=5, seed=42)
NETWORK = NetworkConfig(power=6.0)


def _engine(**overrides):
    return PreservationEngine(replace(FAST, **overrides), NETWORK)


@pytest.fixture
def identical_dataset(module_matrix):
    return TaggedDataset(DatasetRole.COMPARISON_GROUP, "same", module_matrix.copy())


# =============================================================================
# Statistic battery
# =============================================================================

class TestBattery:
    def test_identical_sets_have_perfect_rank_and_cor_cor(self, module_matrix):
        std = standardize_rows(module_matrix.data[:20])
        values = battery(std, std, NetworkParams(power=6))
        assert set(values) == set(STATISTICS)
        assert values["connectivity_rank"] == pytest.approx(1.0)
        assert values["cor_cor"] == pytest.approx(1.0)
        assert 0.0 < values["density"] <= 1.0

    def test_module_denser_than_noise(self, module_matrix):
        std = standardize_rows(module_matrix.data)
        module = battery(std[:20], std[:20], NetworkParams(power=6))
        noise = battery(std[-20:], std[-20:], NetworkParams(power=6))
        assert module["density"] > 10 * noise["density"]
        assert module["clustering"] > noise["clustering"]

    def test_too_few_genes_is_nan(self, module_matrix):
        std = standardize_rows(module_matrix.data[:2])
        values = battery(std, std, NetworkParams())
        assert all(np.isnan(v) for v in values.values())


class TestZScore:
    def test_standard(self):
        null = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
        assert zscore(2.0 + np.std(null), null) == pytest.approx(1.0)

    def test_degenerate_null_is_nan(self):
        assert np.isnan(zscore(1.0, np.ones(10)))
        assert np.isnan(zscore(1.0, np.array([0.5, np.nan, np.nan])))

    def test_nan_observed_is_nan(self):
        assert np.isnan(zscore(np.nan, np.arange(10.0)))


class TestPermutationNull:
    def test_independent_of_chunking_and_workers(self, module_matrix):
        std = standardize_rows(module_matrix.data)
        args = (std[:10], std, 30, NetworkParams(power=6), 42, 1, 99)
        serial = permutation_null(*args, n_jobs=1, chunk_size=30)
        chunked = permutation_null(*args, n_jobs=2, chunk_size=7)
        np.testing.assert_array_equal(serial, chunked)
        assert serial.shape == (30, len(STATISTICS))

    def test_seed_changes_draws(self, module_matrix):
        std = standardize_rows(module_matrix.data)
        a = permutation_null(std[:10], std, 10, NetworkParams(power=6), 42, 1, 99)
        b = permutation_null(std[:10], std, 10, NetworkParams(power=6), 43, 1, 99)
        assert not np.array_equal(a, b)

    def test_correspondence_null_permutes_gene_labels(self, module_matrix):
        # Same data on both sides: pairing the module with random genes
        # must break the reference-comparison correspondence
        std = standardize_rows(module_matrix.data)
        null = permutation_null(std[:50], std, 40, NetworkParams(power=6), 42, 1, 99)
        rank = null[:, STATISTICS.index("connectivity_rank")]
        cor_cor = null[:, STATISTICS.index("cor_cor")]
        assert np.nanmean(rank) < 0.5
        assert np.nanmean(cor_cor) < 0.5
        assert np.nanstd(cor_cor) > 0


class TestScoreGeneSet:
    def test_identical_module_scores_high(self, module_matrix):
        std = standardize_rows(module_matrix.data)
        scores = score_gene_set(std, std, np.arange(50), NetworkParams(power=6),
                                n_permutations=40, seed=42, module=1, comparison_key=0)
        assert scores.z_summary >= 10
        assert scores.observed["cor_cor"] == pytest.approx(1.0)
        assert scores.z_scores["cor_cor"] > 3
        assert scores.z_scores["connectivity_rank"] > 3
        assert all(np.isfinite(z) for z in scores.z_scores.values())

    def test_small_set_is_nan_with_notes(self, module_matrix):
        std = standardize_rows(module_matrix.data)
        scores = score_gene_set(std, std, [0, 1], NetworkParams(), 10, 42, 1, 0)
        assert np.isnan(scores.z_summary)
        assert "z_summary" in {n.statistic for n in scores.notes}


# =============================================================================
# Engine
# =============================================================================

class TestPreservationEngine:
    def test_identical_comparison_strongly_preserved(
        self, reference_dataset, module_assignment, identical_dataset
    ):
        result = _engine().run(reference_dataset, module_assignment, [identical_dataset])
        assert result.n_failed == 0
        row = result.records.iloc[0]
        assert row["module"] == 1
        assert row["comparison"] == "same"
        assert row["reference"] == "2x"
        assert row["module_size"] == 50
        assert row["z_summary"] >= 10

    def test_lightly_perturbed_comparison_is_preserved(self, module_matrix, reference_dataset, module_assignment):
        jittered = DuplicationTransform(0.02, rng=np.random.default_rng(3)).apply(module_matrix)
        dataset = TaggedDataset(DatasetRole.COMPARISON_GROUP, "4x", jittered)
        row = _engine().run(reference_dataset, module_assignment, [dataset]).records.iloc[0]
        assert row["z_summary"] > 5
        assert row["z_connectivity_rank"] > 0
        assert row["z_cor_cor"] > 0

    def test_noise_comparison_not_preserved(
        self, reference_dataset, module_assignment, noise_dataset
    ):
        result = _engine().run(reference_dataset, module_assignment, [noise_dataset])
        z = result.records.iloc[0]["z_summary"]
        assert np.isnan(z) or abs(z) < 3

    def test_invariant_to_gene_order(self, reference_dataset, module_assignment, noise_dataset):
        baseline = _engine().run(reference_dataset, module_assignment, [noise_dataset])

        order = np.random.default_rng(42).permutation(noise_dataset.matrix.n_genes)
        shuffled = noise_dataset.matrix.subset_genes(noise_dataset.matrix.gene_ids[order])
        shuffled_dataset = TaggedDataset(DatasetRole.COMPARISON_GROUP, "noise", shuffled)
        reordered = _engine().run(reference_dataset, module_assignment, [shuffled_dataset])

        np.testing.assert_allclose(
            baseline.records["z_summary"].to_numpy(),
            reordered.records["z_summary"].to_numpy(),
        )

    def test_parallel_matches_serial(
        self, reference_dataset, module_assignment, identical_dataset, noise_dataset
    ):
        datasets = [identical_dataset, noise_dataset]
        serial = _engine().run(reference_dataset, module_assignment, datasets)
        parallel = _engine(n_jobs=2, permutation_jobs=2, permutation_chunk_size=7).run(
            reference_dataset, module_assignment, datasets
        )
        pd.testing.assert_frame_equal(serial.records, parallel.records)

    def test_small_module_is_na(self, module_matrix, reference_dataset, identical_dataset):
        labels = np.zeros(module_matrix.n_genes, dtype=int)
        labels[:50] = 1
        labels[50:53] = 2
        assignment = ModuleAssignment.from_labels(module_matrix.gene_ids, labels)

        result = _engine().run(reference_dataset, assignment, [identical_dataset])
        small = result.records.set_index("module").loc[2]
        assert np.isnan(small["z_summary"])
        assert "minimum 5" in small["notes"]

    def test_missing_genes_fail_only_their_unit(
        self, module_matrix, reference_dataset, module_assignment, identical_dataset
    ):
        keep = ~module_matrix.gene_ids.isin(module_assignment.genes(1)[:3])
        partial = TaggedDataset(
            DatasetRole.COMPARISON_GROUP, "partial", module_matrix.select_genes(keep)
        )
        result = _engine().run(
            reference_dataset, module_assignment, [identical_dataset, partial]
        )
        assert result.n_failed == 1
        failure = result.failures.iloc[0]
        assert failure["comparison"] == "partial"
        assert failure["error_type"] == DimensionMismatchError.__name__
        assert list(result.records["comparison"]) == ["same"]

    def test_checkpoints_are_reloaded(
        self, tmp_path, reference_dataset, module_assignment, noise_dataset
    ):
        engine = _engine(checkpoint_dir=tmp_path)
        first = engine.run(reference_dataset, module_assignment, [noise_dataset])
        files = list(tmp_path.glob("*.json"))
        assert len(files) == 1

        # Tamper with the stored score: a rerun must read it, not recompute
        payload = json.loads(files[0].read_text())
        assert set(payload) == {"fingerprint", "record"}
        payload["record"]["z_summary"] = 123.0
        files[0].write_text(json.dumps(payload))

        second = _engine(checkpoint_dir=tmp_path).run(
            reference_dataset, module_assignment, [noise_dataset]
        )
        assert second.records.iloc[0]["z_summary"] == 123.0
        assert first.records.iloc[0]["module"] == second.records.iloc[0]["module"]

    @pytest.mark.parametrize("overrides, network", [
        ({"n_permutations": 10, "seed": 99}, NETWORK),
        ({}, NetworkConfig(power=2.0)),
        ({}, NetworkConfig(power=6.0, adjacency_type="signed")),
    ])
    def test_stale_checkpoints_are_recomputed(
        self, tmp_path, reference_dataset, module_assignment, noise_dataset, overrides, network
    ):
        _engine(checkpoint_dir=tmp_path).run(reference_dataset, module_assignment, [noise_dataset])
        path = next(tmp_path.glob("*.json"))
        payload = json.loads(path.read_text())
        payload["record"]["z_summary"] = 123.0
        path.write_text(json.dumps(payload))

        engine = PreservationEngine(replace(FAST, checkpoint_dir=tmp_path, **overrides), network)
        rerun = engine.run(reference_dataset, module_assignment, [noise_dataset])
        row = rerun.records.iloc[0]
        assert row["z_summary"] != 123.0
        assert row["n_permutations"] == overrides.get("n_permutations", FAST.n_permutations)
        # The fresh result replaces the stale file
        assert json.loads(path.read_text())["fingerprint"] != payload["fingerprint"]

    def test_checkpoint_of_other_data_is_recomputed(
        self, tmp_path, reference_dataset, module_assignment, noise_dataset, module_matrix
    ):
        _engine(checkpoint_dir=tmp_path).run(reference_dataset, module_assignment, [noise_dataset])
        path = next(tmp_path.glob("*.json"))
        payload = json.loads(path.read_text())
        payload["record"]["z_summary"] = 123.0
        path.write_text(json.dumps(payload))

        # Same label, different values
        changed = TaggedDataset(DatasetRole.COMPARISON_GROUP, "noise", module_matrix.copy())
        rerun = _engine(checkpoint_dir=tmp_path).run(reference_dataset, module_assignment, [changed])
        assert rerun.records.iloc[0]["z_summary"] != 123.0

    def test_rejects_duplicate_labels(self, reference_dataset, module_assignment, noise_dataset):
        with pytest.raises(ValueError, match="unique"):
            _engine().run(reference_dataset, module_assignment, [noise_dataset, noise_dataset])

    def test_rejects_mistagged_reference(self, module_assignment, noise_dataset):
        with pytest.raises(ValueError, match="role"):
            _engine().run(noise_dataset, module_assignment, [noise_dataset])

    def test_requires_power(self):
        with pytest.raises(ValueError, match="power"):
            PreservationEngine(FAST, NetworkConfig(power=None))


class TestRecords:
    def test_round_trip_keeps_nan(self):
        record = PreservationRecord(
            module=3, reference="2x", comparison="4x", role=DatasetRole.COMPARISON_GROUP,
            z_summary=np.nan, module_size=12,
            z_scores={"density": 4.0, "cor_cor": np.nan},
        )
        payload = json.loads(json.dumps(record.to_dict()))
        assert payload["z_summary"] is None
        restored = PreservationRecord.from_dict(payload)
        assert np.isnan(restored.z_summary)
        assert restored.z_scores["density"] == 4.0
        assert np.isnan(restored.z_scores["cor_cor"])

    def test_replicate_requires_descriptor(self, module_matrix):
        with pytest.raises(ValueError, match="SimulationDescriptor"):
            TaggedDataset(DatasetRole.SIMULATION_REPLICATE, "rep", module_matrix)


class TestSharedPool:
    def test_pool_is_sorted_intersection(self, module_matrix):
        other = module_matrix.subset_genes(list(module_matrix.gene_ids[::-1][:100]))
        pool = prepare_pool(module_matrix, other)
        assert list(pool.gene_ids) == sorted(other.gene_ids)
        assert pool.finite.all()

    def test_comparison_key_is_stable(self):
        assert comparison_key("4x") == comparison_key("4x")
        assert comparison_key("4x") != comparison_key("3x")
