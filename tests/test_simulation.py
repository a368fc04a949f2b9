"""
Tests for the duplication simulator.

Ground-truth properties of synthetic datasets:
    - every value is a doubled value displaced by at most 2 x noise x |v|
    - unbalanced genes keep undoubled values in a fixed share of samples
    - hub-imbalance draws only from the hub set, random-imbalance only
      from its candidate pool
    - replicate streams are reproducible and independent
"""

import numpy as np
import pandas as pd
import pytest

from netpreserve.config import NetworkConfig, PipelineConfig, PreservationConfig, SimulationConfig
from netpreserve.core.matrix import ExpressionMatrix
from netpreserve.core.quality import ProvenanceFlag
from netpreserve.exceptions import DimensionMismatchError
from netpreserve.pipeline import run_simulation_study
from netpreserve.simulation.duplication import (
    DuplicationTransform,
    ScenarioKind,
    SimulationDescriptor,
    imbalanced_gene_count,
    select_hub_genes,
    simulate_duplication,
)


@pytest.fixture
def small_matrix():
    """20 genes x 12 samples, positive values."""
    rng = np.random.default_rng(42)
    return ExpressionMatrix(
        data=rng.normal(8.0, 2.0, size=(20, 12)),
        gene_ids=pd.Index([f"g{i:02d}" for i in range(20)]),
        sample_ids=pd.Index([f"s{j:02d}" for j in range(12)]),
    )


@pytest.fixture
def connectivity(small_matrix):
    return pd.Series(np.arange(20, dtype=float), index=small_matrix.gene_ids, name="kIM")


class TestDuplicationTransform:
    def test_doubled_within_noise_bound(self, small_matrix):
        v = small_matrix.data
        for replicate in range(10):
            transform = DuplicationTransform(0.5, rng=np.random.default_rng(replicate))
            dup = transform.apply(small_matrix).data
            assert (np.abs(dup - 2 * v) <= 2 * 0.5 * np.abs(v) + 1e-12).all()

    def test_zero_noise_is_exact_doubling(self, small_matrix):
        result = DuplicationTransform(0.0, rng=np.random.default_rng(0)).apply(small_matrix)
        np.testing.assert_array_equal(result.data, 2 * small_matrix.data)
        assert (result.provenance == ProvenanceFlag.DUPLICATED).all()

    def test_unbalanced_genes_keep_undoubled_values(self, small_matrix):
        transform = DuplicationTransform(
            0.1, unbalanced_genes=["g03", "g07"], imbalance_sample_fraction=0.5,
            rng=np.random.default_rng(42),
        )
        result = transform.apply(small_matrix)
        flags = result.provenance

        unbalanced = (flags & ProvenanceFlag.UNBALANCED) != 0
        rows = small_matrix.gene_positions(["g03", "g07"])
        # 50% of 12 samples per unbalanced gene, nowhere else
        assert unbalanced.sum() == 12
        assert (unbalanced[rows].sum(axis=1) == 6).all()

        v = small_matrix.data
        undoubled = result.data[unbalanced]
        assert (np.abs(undoubled - v[unbalanced]) <= 0.1 * np.abs(v[unbalanced]) + 1e-12).all()
        assert (flags[unbalanced] & ProvenanceFlag.DUPLICATED == 0).all()
        assert (flags[~unbalanced] == ProvenanceFlag.JITTERED | ProvenanceFlag.DUPLICATED).all()

    def test_identifiers_preserved(self, small_matrix):
        result = DuplicationTransform(0.25, rng=np.random.default_rng(1)).apply(small_matrix)
        assert result.gene_ids.equals(small_matrix.gene_ids)
        assert result.sample_ids.equals(small_matrix.sample_ids)

    def test_rejects_negative_noise(self):
        with pytest.raises(ValueError, match="noise_factor"):
            DuplicationTransform(-0.1)

    def test_unknown_unbalanced_gene(self, small_matrix):
        transform = DuplicationTransform(0.1, unbalanced_genes=["nope"])
        with pytest.raises(DimensionMismatchError, match="not found"):
            transform.apply(small_matrix)


class TestHubs:
    def test_select_hub_genes(self, connectivity):
        hubs = select_hub_genes(connectivity, hub_quantile=0.75)
        # quantile(0.75) of 0..19 is 14.25 -> 15..19
        assert hubs == ["g19", "g18", "g17", "g16", "g15"]

    def test_empty_connectivity(self):
        assert select_hub_genes(pd.Series(dtype=float)) == []

    @pytest.mark.parametrize("n_hubs, fraction, expected", [
        (0, 0.5, 0), (1, 0.5, 1), (5, 0.5, 2), (10, 0.5, 5), (4, 1.0, 4),
    ])
    def test_imbalanced_gene_count(self, n_hubs, fraction, expected):
        assert imbalanced_gene_count(n_hubs, fraction) == expected


class TestSimulateDuplication:
    def test_enumerates_every_combination(self, small_matrix, connectivity):
        datasets = list(simulate_duplication(
            small_matrix, noise_factors=[0.1, 0.5], numsim=3, connectivity=connectivity,
        ))
        assert len(datasets) == 2 * 3 * 3
        labels = {d.descriptor.label for d in datasets}
        assert len(labels) == len(datasets)
        assert "hub_imbalance_noise0.5_rep2" in labels

    def test_hub_imbalance_draws_from_hubs(self, small_matrix, connectivity):
        hubs = set(select_hub_genes(connectivity, 0.75))
        for dataset in simulate_duplication(
            small_matrix, noise_factors=[0.5], numsim=10,
            scenarios=["hub_imbalance"], connectivity=connectivity,
        ):
            unbalanced = dataset.descriptor.unbalanced_genes
            assert len(unbalanced) == imbalanced_gene_count(len(hubs), 0.5)
            assert set(unbalanced) <= hubs

    def test_random_imbalance_uses_same_count(self, small_matrix, connectivity):
        for dataset in simulate_duplication(
            small_matrix, noise_factors=[0.5], numsim=5,
            scenarios=["random_imbalance"], connectivity=connectivity,
        ):
            assert len(dataset.descriptor.unbalanced_genes) == 2

    def test_control_has_no_unbalanced_genes(self, small_matrix):
        for dataset in simulate_duplication(
            small_matrix, noise_factors=[0.5], numsim=2, scenarios=["control"],
        ):
            assert dataset.descriptor.unbalanced_genes == ()
            assert not (dataset.matrix.provenance & ProvenanceFlag.UNBALANCED).any()

    def test_control_replicates_double_the_source(self, small_matrix):
        datasets = list(simulate_duplication(
            small_matrix, noise_factors=[0.5], numsim=10, scenarios=["control"],
        ))
        assert len(datasets) == 10
        v = small_matrix.data
        for dataset in datasets:
            assert dataset.matrix.shape == (20, 12)
            assert (np.abs(dataset.matrix.data - 2 * v) <= 2 * 0.5 * np.abs(v) + 1e-12).all()

    def test_random_pool_limits_random_imbalance(self, small_matrix, connectivity):
        pool = ["g00", "g01", "g02", "g03"]
        for dataset in simulate_duplication(
            small_matrix, noise_factors=[0.5], numsim=10, scenarios=["random_imbalance"],
            connectivity=connectivity, random_pool=pool,
        ):
            assert len(dataset.descriptor.unbalanced_genes) == 2
            assert set(dataset.descriptor.unbalanced_genes) <= set(pool)

    def test_random_pool_must_exist(self, small_matrix, connectivity):
        with pytest.raises(DimensionMismatchError):
            list(simulate_duplication(
                small_matrix, [0.5], scenarios=["random_imbalance"],
                connectivity=connectivity, random_pool=["nope"],
            ))

    def test_imbalance_requires_connectivity(self, small_matrix):
        with pytest.raises(ValueError, match="connectivity"):
            list(simulate_duplication(small_matrix, [0.5], scenarios=["hub_imbalance"]))

    def test_reproducible_and_independent(self, small_matrix):
        def run(seed):
            return list(simulate_duplication(
                small_matrix, [0.5], numsim=2, scenarios=["control"], seed=seed,
            ))
        a, b, c = run(42), run(42), run(7)
        np.testing.assert_array_equal(a[0].matrix.data, b[0].matrix.data)
        assert not np.array_equal(a[0].matrix.data, a[1].matrix.data)
        assert not np.array_equal(a[0].matrix.data, c[0].matrix.data)


class TestDescriptor:
    def test_round_trip(self):
        descriptor = SimulationDescriptor(0.25, ScenarioKind.HUB_IMBALANCE, 3, ("g1", "g2"))
        assert SimulationDescriptor.from_dict(descriptor.to_dict()) == descriptor
        assert descriptor.label == "hub_imbalance_noise0.25_rep3"


class TestSimulationStudy:
    def test_preservation_falls_with_noise(self, module_matrix, module_assignment, reference_dataset):
        config = PipelineConfig(
            network=NetworkConfig(power=6.0),
            preservation=PreservationConfig(n_permutations=30, seed=42),
            simulation=SimulationConfig(
                noise_factors=(0.05, 1.0), numsim=3, scenarios=("control", "hub_imbalance"),
            ),
        )
        study = run_simulation_study(reference_dataset, module_assignment, 1, config)

        assert len(study.descriptors) == 2 * 2 * 3
        assert study.preservation.n_failed == 0
        records = study.preservation.records
        assert set(records["role"]) == {"simulation_replicate"}
        assert set(records["scenario"]) == {"control", "hub_imbalance"}

        median = study.median_z_by_noise()
        control = median[median["scenario"] == "control"].set_index("noise_factor")["median_z_summary"]
        assert control.loc[0.05] > control.loc[1.0]
        assert control.loc[0.05] > 5

    def test_unknown_module(self, module_assignment, reference_dataset):
        config = PipelineConfig(network=NetworkConfig(power=6.0))
        with pytest.raises(ValueError, match="not in the reference assignment"):
            run_simulation_study(reference_dataset, module_assignment, 9, config)

    def test_random_imbalance_stays_inside_module(self, module_assignment, reference_dataset):
        config = PipelineConfig(
            network=NetworkConfig(power=6.0),
            preservation=PreservationConfig(n_permutations=5, seed=42),
            simulation=SimulationConfig(noise_factors=(0.1,), numsim=10, scenarios=("random_imbalance",)),
        )
        study = run_simulation_study(reference_dataset, module_assignment, 1, config)

        module_genes = set(module_assignment.genes(1))
        assert len(study.descriptors) == 10
        for descriptor in study.descriptors:
            assert len(descriptor.unbalanced_genes) > 0
            assert set(descriptor.unbalanced_genes) <= module_genes

    def test_replicates_are_streamed_to_callback(self, module_assignment, reference_dataset):
        config = PipelineConfig(
            network=NetworkConfig(power=6.0),
            preservation=PreservationConfig(n_permutations=5, seed=42, n_jobs=2),
            simulation=SimulationConfig(noise_factors=(0.1,), numsim=3, scenarios=("control",)),
        )
        seen = []
        study = run_simulation_study(
            reference_dataset, module_assignment, 1, config, on_dataset=seen.append,
        )
        assert [s.descriptor for s in seen] == study.descriptors
        assert all(s.matrix.shape == reference_dataset.matrix.shape for s in seen)
        assert len(study.preservation.records) == 3
