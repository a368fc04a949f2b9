"""Tests for expression, assignment and gene-list readers and writers."""

import numpy as np
import pandas as pd
import pytest

from netpreserve.core.quality import ProvenanceFlag
from netpreserve.io.loaders import (
    assignment_from_gene_lists,
    load_expression_matrix,
    load_gene_lists,
    load_module_assignment,
)
from netpreserve.io.writers import (
    write_expression_matrix,
    write_gene_lists,
    write_module_assignment,
)
from netpreserve.network.modules import ModuleAssignment
from netpreserve.simulation.duplication import DuplicationTransform


class TestExpressionMatrixIO:
    def test_csv_round_trip(self, tmp_path, module_matrix):
        path = tmp_path / "expr.csv"
        write_expression_matrix(module_matrix, path)
        loaded = load_expression_matrix(path)
        assert loaded.gene_ids.equals(module_matrix.gene_ids)
        assert loaded.sample_ids.equals(module_matrix.sample_ids)
        np.testing.assert_allclose(loaded.data, module_matrix.data)

    def test_tsv(self, tmp_path):
        path = tmp_path / "expr.tsv"
        path.write_text("gene\ts1\ts2\ng1\t1.0\t2.0\ng2\t3.0\t4.5\n")
        matrix = load_expression_matrix(path)
        assert matrix.shape == (2, 2)
        assert matrix.data[1, 1] == 4.5

    def test_duplicate_genes_warn(self, tmp_path):
        path = tmp_path / "dup.csv"
        path.write_text("gene,s1,s2\ng1,1,2\ng1,3,4\ng2,5,6\n")
        with pytest.warns(UserWarning, match="duplicate gene IDs"):
            matrix = load_expression_matrix(path)
        assert list(matrix.gene_ids) == ["g1", "g2"]
        assert matrix.data[0, 0] == 1.0

    def test_nan_warns(self, tmp_path):
        path = tmp_path / "nan.csv"
        path.write_text("gene,s1,s2\ng1,1,\ng2,5,6\n")
        with pytest.warns(UserWarning, match="NaN"):
            matrix = load_expression_matrix(path)
        assert np.isnan(matrix.data[0, 1])

    def test_infinite_rejected(self, tmp_path):
        path = tmp_path / "inf.csv"
        path.write_text("gene,s1,s2\ng1,1,inf\ng2,5,6\n")
        with pytest.raises(ValueError, match="infinite"):
            load_expression_matrix(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_expression_matrix(tmp_path / "nope.csv")

    def test_provenance_written_alongside(self, tmp_path, module_matrix):
        doubled = DuplicationTransform(0.1, rng=np.random.default_rng(42)).apply(module_matrix)
        write_expression_matrix(doubled, tmp_path / "sim.csv", write_provenance=True)
        flags = pd.read_csv(tmp_path / "sim.flags.csv", index_col=0)
        assert (flags.to_numpy() == ProvenanceFlag.JITTERED | ProvenanceFlag.DUPLICATED).all()


class TestAssignmentIO:
    @pytest.fixture
    def assignment(self):
        return ModuleAssignment.from_labels(["a", "b", "c", "d", "e"], [1, 1, 1, 2, 0])

    def test_csv_round_trip(self, tmp_path, assignment):
        path = tmp_path / "assignment.csv"
        write_module_assignment(assignment, path)
        assert load_module_assignment(path) == assignment

    def test_missing_column(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("gene,label\na,1\n")
        with pytest.raises(ValueError, match="lacks columns"):
            load_module_assignment(path)

    def test_gene_lists_round_trip(self, tmp_path, assignment):
        write_gene_lists(assignment.gene_lists(), tmp_path / "lists")
        assert sorted(p.name for p in (tmp_path / "lists").iterdir()) == ["1_M2.txt", "2_M1.txt"]

        lists = load_gene_lists(tmp_path / "lists")
        assert list(lists) == ["1_M2", "2_M1"]
        rebuilt = assignment_from_gene_lists(lists, assignment.gene_ids)
        assert rebuilt == assignment

    def test_gene_list_in_two_modules(self):
        with pytest.raises(ValueError, match="more than one module"):
            assignment_from_gene_lists({"1_M1": ["a"], "2_M2": ["a", "b"]}, ["a", "b"])

    def test_malformed_list_name(self):
        with pytest.raises(ValueError, match="does not match"):
            assignment_from_gene_lists({"module1": ["a"]}, ["a"])
