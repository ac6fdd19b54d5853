#!/usr/bin/env python3
"""
Per-cluster and per-metacluster summaries of a clustered expression matrix.

Frequencies are percentages of all cells; every id appears, including ids
without cells. Mean expression is computed over the clustering markers and
refuses to produce NaN rows for metaclusters without cells.
"""

import numpy as np
import pandas as pd

from cytometry_errors import EmptyInput, EmptyMetacluster, InvalidConfiguration
from cluster_assignment import ClusterAssignment
from expression_matrix import validate_subset


def _as_assignment(assignment, metacluster_map):
    if isinstance(assignment, ClusterAssignment):
        if metacluster_map is None or assignment.metacluster_map is metacluster_map:
            return assignment
        return assignment.with_metaclusters(metacluster_map)
    if metacluster_map is None:
        raise InvalidConfiguration("a metacluster map is needed to aggregate plain cluster ids")
    return ClusterAssignment(assignment, metacluster_map.n_clusters, metacluster_map)


def _percentages(counts, total):
    return {i + 1: 100.0 * float(c) / total for i, c in enumerate(counts)}


def frequencies(assignment, metacluster_map=None):
    """
    Percentage of cells per cluster and per metacluster.

    Args:
        assignment: ClusterAssignment or array of 1-based cluster ids
        metacluster_map: MetaclusterMap (optional if the assignment carries one)

    Returns:
        (cluster_freq, metacluster_freq) dicts mapping id -> percentage
    """
    assignment = _as_assignment(assignment, metacluster_map)
    if assignment.n_cells == 0:
        raise EmptyInput("cannot compute frequencies of zero cells")

    cluster_freq = _percentages(assignment.cluster_counts(), assignment.n_cells)
    metacluster_freq = _percentages(assignment.metacluster_counts(), assignment.n_cells)
    return cluster_freq, metacluster_freq


def frequency_table(assignment, metacluster_map=None, level='metacluster'):
    """Counts and percentages per cluster or metacluster as a DataFrame."""
    assignment = _as_assignment(assignment, metacluster_map)
    if level == 'metacluster':
        counts = assignment.metacluster_counts()
    elif level == 'cluster':
        counts = assignment.cluster_counts()
    else:
        raise InvalidConfiguration(f"level must be 'cluster' or 'metacluster', got {level!r}")

    total = assignment.n_cells
    table = pd.DataFrame({
        level: np.arange(1, len(counts) + 1),
        'count': counts,
        'percentage': 100.0 * counts / total if total else np.zeros(len(counts)),
    })
    return table


def _group_means(values, labels, n_groups):
    sums = np.zeros((n_groups, values.shape[1]))
    np.add.at(sums, labels - 1, values)
    counts = np.bincount(labels - 1, minlength=n_groups)
    return sums, counts


def mean_expression(matrix, subset, assignment, metacluster_map=None, metaclusters=None):
    """
    Mean expression of the subset markers per metacluster.

    Args:
        matrix: ExpressionMatrix the assignment was computed from
        subset: Column indices used for clustering
        assignment: ClusterAssignment or per-cell cluster ids
        metacluster_map: MetaclusterMap (optional if the assignment carries one)
        metaclusters: Restrict to these metacluster ids (default: all)

    Returns:
        DataFrame indexed by metacluster id with one column per subset marker

    Raises:
        EmptyMetacluster: if any requested metacluster has no cells
    """
    assignment = _as_assignment(assignment, metacluster_map)
    validate_subset(matrix, subset)
    if assignment.n_cells != matrix.n_cells:
        raise InvalidConfiguration(
            f"assignment covers {assignment.n_cells} cells but matrix has {matrix.n_cells}"
        )

    if metaclusters is None:
        requested = np.arange(1, assignment.n_metaclusters + 1)
    else:
        requested = np.asarray(sorted(set(int(m) for m in metaclusters)), dtype=int)
        out_of_range = [int(m) for m in requested if not 1 <= m <= assignment.n_metaclusters]
        if out_of_range:
            raise InvalidConfiguration(
                f"metacluster id(s) {out_of_range} outside [1, {assignment.n_metaclusters}]"
            )

    values = matrix.columns(subset)
    sums, counts = _group_means(values, assignment.metacluster_ids, assignment.n_metaclusters)

    empty = [int(m) for m in requested if counts[m - 1] == 0]
    if empty:
        raise EmptyMetacluster(empty)

    means = sums[requested - 1] / counts[requested - 1][:, None]
    result = pd.DataFrame(means, index=pd.Index(requested, name='metacluster'),
                          columns=[matrix.marker_names[i] for i in subset])
    return result


def cluster_mean_expression(matrix, subset, assignment):
    """Mean expression of the subset markers per SOM node; nodes without cells are omitted."""
    if not isinstance(assignment, ClusterAssignment):
        raise InvalidConfiguration("cluster_mean_expression needs a ClusterAssignment")
    validate_subset(matrix, subset)
    if assignment.n_cells != matrix.n_cells:
        raise InvalidConfiguration(
            f"assignment covers {assignment.n_cells} cells but matrix has {matrix.n_cells}"
        )

    sums, counts = _group_means(matrix.columns(subset), assignment.cluster_ids, assignment.n_clusters)
    populated = np.flatnonzero(counts > 0)
    return pd.DataFrame(sums[populated] / counts[populated][:, None],
                        index=pd.Index(populated + 1, name='cluster'),
                        columns=[matrix.marker_names[i] for i in subset])
