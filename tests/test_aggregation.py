#!/usr/bin/env python3
"""
Tests for cluster assignments, frequencies and mean expression.
"""

import pytest
import numpy as np

from aggregation import (cluster_mean_expression, frequencies, frequency_table,
                         mean_expression)
from cluster_assignment import ClusterAssignment
from cytometry_errors import EmptyMetacluster, InvalidConfiguration
from expression_matrix import ExpressionMatrix
from metaclustering import MetaclusterMap


@pytest.fixture
def matrix():
    """6 cells x 3 markers with hand-computable means."""
    values = np.array([
        [1.0, 2.0, 100.0],
        [3.0, 4.0, 100.0],
        [5.0, 6.0, 100.0],
        [10.0, 20.0, 100.0],
        [20.0, 40.0, 100.0],
        [0.0, 0.0, 100.0],
    ])
    return ExpressionMatrix(values, ['CD3', 'CD19', 'DNA1'])


@pytest.fixture
def metacluster_map():
    # clusters 1, 2 -> metacluster 1; clusters 3, 4 -> metacluster 2
    return MetaclusterMap(np.array([1, 1, 2, 2]), 2)


@pytest.fixture
def assignment(metacluster_map):
    # cluster 4 has no cells
    return ClusterAssignment([1, 2, 1, 3, 3, 2], 4, metacluster_map)


class TestClusterAssignment:
    """Tests for the per-cell assignment store."""

    def test_metacluster_ids_follow_map(self, assignment):
        np.testing.assert_array_equal(assignment.metacluster_ids, [1, 1, 1, 2, 2, 1])

    def test_ids_are_read_only(self, assignment):
        with pytest.raises(ValueError):
            assignment.cluster_ids[0] = 2

    def test_out_of_range_cluster_id_raises(self):
        with pytest.raises(InvalidConfiguration, match=r"\[1, 4\]"):
            ClusterAssignment([1, 5], 4)

    def test_map_must_cover_all_clusters(self, metacluster_map):
        with pytest.raises(InvalidConfiguration):
            ClusterAssignment([1, 2], 3, metacluster_map)

    def test_empty_clusters_reported(self, assignment):
        assert assignment.empty_clusters() == [4]
        assert assignment.empty_metaclusters() == []

    def test_with_metaclusters_returns_new_assignment(self, metacluster_map):
        plain = ClusterAssignment([1, 3], 4)
        merged = plain.with_metaclusters(metacluster_map)

        assert plain.metacluster_map is None
        np.testing.assert_array_equal(merged.metacluster_ids, [1, 2])

    def test_metaclusters_required(self):
        plain = ClusterAssignment([1, 2], 2)
        with pytest.raises(ValueError, match="No metacluster map"):
            plain.metacluster_ids

    def test_to_frame(self, assignment):
        frame = assignment.to_frame()
        assert list(frame.columns) == ['cluster', 'metacluster']
        assert len(frame) == 6


class TestFrequencies:
    """Tests for cluster and metacluster frequencies."""

    def test_exact_percentages(self, assignment):
        cluster_freq, metacluster_freq = frequencies(assignment)

        assert cluster_freq == pytest.approx({1: 100 * 2 / 6, 2: 100 * 2 / 6, 3: 100 * 2 / 6, 4: 0.0})
        assert metacluster_freq == pytest.approx({1: 100 * 4 / 6, 2: 100 * 2 / 6})

    def test_zero_count_clusters_present(self, assignment):
        cluster_freq, _ = frequencies(assignment)
        assert 4 in cluster_freq
        assert cluster_freq[4] == 0.0

    def test_frequencies_sum_to_100(self):
        rng = np.random.RandomState(3)
        metacluster_map = MetaclusterMap(rng.permutation(np.arange(25) % 7) + 1, 7)
        assignment = ClusterAssignment(rng.randint(1, 26, size=997), 25, metacluster_map)

        cluster_freq, metacluster_freq = frequencies(assignment)

        assert len(cluster_freq) == 25
        assert len(metacluster_freq) == 7
        assert sum(cluster_freq.values()) == pytest.approx(100.0, abs=1e-6)
        assert sum(metacluster_freq.values()) == pytest.approx(100.0, abs=1e-6)

    def test_plain_cluster_ids_with_map(self, metacluster_map):
        cluster_freq, metacluster_freq = frequencies(np.array([1, 3, 3, 4]), metacluster_map)

        assert cluster_freq[3] == pytest.approx(50.0)
        assert metacluster_freq == pytest.approx({1: 25.0, 2: 75.0})

    def test_frequency_table(self, assignment):
        table = frequency_table(assignment, level='cluster')

        assert list(table.columns) == ['cluster', 'count', 'percentage']
        assert table['count'].tolist() == [2, 2, 2, 0]
        assert table['percentage'].sum() == pytest.approx(100.0)

    def test_frequency_table_invalid_level(self, assignment):
        with pytest.raises(InvalidConfiguration):
            frequency_table(assignment, level='cell')


class TestMeanExpression:
    """Tests for mean expression per metacluster."""

    def test_hand_computed_means(self, matrix, assignment):
        result = mean_expression(matrix, (0, 1), assignment)

        assert list(result.columns) == ['CD3', 'CD19']
        assert result.index.tolist() == [1, 2]
        # metacluster 1: cells 0, 1, 2, 5
        np.testing.assert_allclose(result.loc[1].values, [9.0 / 4, 12.0 / 4])
        # metacluster 2: cells 3, 4
        np.testing.assert_allclose(result.loc[2].values, [15.0, 30.0])

    def test_only_subset_columns_used(self, matrix, assignment):
        result = mean_expression(matrix, (2,), assignment)
        assert list(result.columns) == ['DNA1']
        np.testing.assert_allclose(result['DNA1'].values, [100.0, 100.0])

    def test_empty_metacluster_raises(self, matrix):
        metacluster_map = MetaclusterMap(np.array([1, 2, 3]), 3)
        assignment = ClusterAssignment([1, 1, 3, 3, 1, 3], 3, metacluster_map)

        with pytest.raises(EmptyMetacluster) as excinfo:
            mean_expression(matrix, (0, 1), assignment)

        assert excinfo.value.metacluster_ids == [2]

        # The assignment itself stays usable
        _, metacluster_freq = frequencies(assignment)
        assert metacluster_freq[2] == 0.0

    def test_restrict_to_populated_metaclusters(self, matrix):
        metacluster_map = MetaclusterMap(np.array([1, 2, 3]), 3)
        assignment = ClusterAssignment([1, 1, 3, 3, 1, 3], 3, metacluster_map)

        result = mean_expression(matrix, (0,), assignment, metaclusters=[1, 3])

        assert result.index.tolist() == [1, 3]
        assert not result.isna().any().any()

    def test_unknown_metacluster_raises(self, matrix, assignment):
        with pytest.raises(InvalidConfiguration):
            mean_expression(matrix, (0,), assignment, metaclusters=[5])

    def test_cell_count_mismatch_raises(self, matrix, metacluster_map):
        assignment = ClusterAssignment([1, 2], 4, metacluster_map)
        with pytest.raises(InvalidConfiguration, match="6"):
            mean_expression(matrix, (0,), assignment)

    def test_cluster_means_omit_empty_nodes(self, matrix, assignment):
        result = cluster_mean_expression(matrix, (0, 1), assignment)

        assert result.index.tolist() == [1, 2, 3]
        np.testing.assert_allclose(result.loc[1].values, [3.0, 4.0])
        np.testing.assert_allclose(result.loc[2].values, [1.5, 2.0])
        np.testing.assert_allclose(result.loc[3].values, [15.0, 30.0])
