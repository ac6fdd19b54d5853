#!/usr/bin/env python3
"""
Metaclustering of SOM nodes by agglomerative hierarchical clustering.

The prototypes of a trained SOMGrid are merged with average linkage and the
dendrogram is cut so that exactly the requested number of metaclusters
remains.

Cut policy: the dendrogram is cut at the height of the last merge needed to
reach the requested count. Merges at the same height (up to a relative
tolerance of 1e-12) are always applied together, so when heights tie the cut
falls on the side closer to the root. If applying a tied group of merges
overshoots the requested count the request is rejected with MergeInfeasible.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage
from sklearn.metrics import silhouette_score

from cytometry_errors import InvalidConfiguration, MergeInfeasible


HEIGHT_RTOL = 1e-12


@dataclass(frozen=True, eq=False)
class MetaclusterMap:
    """Cluster id -> metacluster id; `mapping[k]` belongs to cluster id k + 1."""

    mapping: np.ndarray
    n_metaclusters: int

    def __post_init__(self):
        mapping = np.array(self.mapping, dtype=int)
        n = int(self.n_metaclusters)
        if mapping.ndim != 1 or len(mapping) == 0:
            raise InvalidConfiguration("metacluster map must contain one entry per cluster")
        if mapping.min() < 1 or mapping.max() > n:
            raise InvalidConfiguration(
                f"metacluster ids must lie in [1, {n}], got range [{mapping.min()}, {mapping.max()}]"
            )
        unused = sorted(set(range(1, n + 1)) - set(mapping.tolist()))
        if unused:
            raise InvalidConfiguration(f"metacluster id(s) {unused} have no member clusters")
        mapping.setflags(write=False)
        object.__setattr__(self, 'mapping', mapping)
        object.__setattr__(self, 'n_metaclusters', n)

    @property
    def n_clusters(self) -> int:
        return len(self.mapping)

    def lookup(self, cluster_ids) -> np.ndarray:
        """Metacluster id for each cluster id."""
        cluster_ids = np.asarray(cluster_ids, dtype=int)
        if cluster_ids.size and (cluster_ids.min() < 1 or cluster_ids.max() > self.n_clusters):
            raise InvalidConfiguration(
                f"cluster ids must lie in [1, {self.n_clusters}], got range "
                f"[{cluster_ids.min()}, {cluster_ids.max()}]"
            )
        return self.mapping[cluster_ids - 1]

    def members(self, metacluster_id) -> np.ndarray:
        """Cluster ids merged into the given metacluster."""
        return np.flatnonzero(self.mapping == metacluster_id) + 1

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({'cluster': np.arange(1, self.n_clusters + 1),
                             'metacluster': self.mapping})


def build_dendrogram(grid, method='average'):
    """Linkage matrix over the grid prototypes (Euclidean distance)."""
    return linkage(grid.prototypes, method=method, metric='euclidean')


def _relabel_by_first_member(labels):
    """Renumber labels 1..k in order of their smallest member index."""
    new_ids = {}
    for label in labels:
        if label not in new_ids:
            new_ids[label] = len(new_ids) + 1
    return np.array([new_ids[label] for label in labels], dtype=int)


def cut_dendrogram(Z, n_groups):
    """
    Cut a linkage matrix into exactly n_groups groups.

    Returns:
        Array of 1-based group labels, one per leaf, numbered by first member
    """
    n_leaves = Z.shape[0] + 1
    if n_groups == n_leaves:
        return np.arange(1, n_leaves + 1)

    heights = Z[:, 2]
    n_merges = n_leaves - n_groups
    height = heights[n_merges - 1]
    tolerance = HEIGHT_RTOL * max(1.0, abs(height))

    labels = fcluster(Z, t=height + tolerance, criterion='distance')
    achieved = len(np.unique(labels))
    if achieved != n_groups:
        more = n_leaves - int(np.sum(heights < height - tolerance))
        raise MergeInfeasible(
            f"cannot cut dendrogram into exactly {n_groups} groups: merges tied at height "
            f"{height:.6g} give either {more} or {achieved} groups"
        )
    return _relabel_by_first_member(labels)


def merge_metaclusters(grid, assignment, n_clusters, method='average'):
    """
    Merge SOM nodes into metaclusters.

    Args:
        grid: Trained SOMGrid
        assignment: Per-cell 1-based cluster ids (or None); only checked to
            lie in [1, n_nodes], does not influence the merge
        n_clusters: Requested number of metaclusters
        method: scipy linkage method

    Returns:
        MetaclusterMap with dense ids 1..n_clusters
    """
    n_clusters = int(n_clusters)
    if n_clusters > grid.n_nodes:
        raise InvalidConfiguration(
            f"requested {n_clusters} metaclusters but grid has only {grid.n_nodes} nodes"
        )
    if n_clusters < 1:
        raise InvalidConfiguration(f"number of metaclusters must be positive, got {n_clusters}")

    if assignment is not None:
        cluster_ids = np.asarray(getattr(assignment, 'cluster_ids', assignment), dtype=int)
        if cluster_ids.size and (cluster_ids.min() < 1 or cluster_ids.max() > grid.n_nodes):
            raise InvalidConfiguration(
                f"cluster assignment holds ids outside [1, {grid.n_nodes}]"
            )

    if grid.n_nodes == 1:
        return MetaclusterMap(np.ones(1, dtype=int), 1)

    Z = build_dendrogram(grid, method=method)
    return MetaclusterMap(cut_dendrogram(Z, n_clusters), n_clusters)


def select_n_metaclusters(grid, k_range=range(2, 21), method='average'):
    """
    Pick the number of metaclusters with the best silhouette score on the prototypes.

    Counts that are infeasible (ties) or out of range for the grid are
    skipped; ties in score go to the smaller count.

    Returns:
        (best_k, DataFrame with columns n_metaclusters, silhouette)
    """
    if grid.n_nodes < 3:
        raise InvalidConfiguration(
            f"silhouette selection needs at least 3 nodes, grid has {grid.n_nodes}"
        )

    Z = build_dendrogram(grid, method=method)
    scores = []
    for k in sorted(set(int(k) for k in k_range)):
        if not 2 <= k < grid.n_nodes:
            continue
        try:
            labels = cut_dendrogram(Z, k)
        except MergeInfeasible:
            continue
        scores.append({'n_metaclusters': k,
                       'silhouette': silhouette_score(grid.prototypes, labels)})

    if not scores:
        raise MergeInfeasible(
            f"no metacluster count in {list(k_range)} can be cut from a {grid.n_nodes}-node grid"
        )

    scores_df = pd.DataFrame(scores)
    best_k = int(scores_df.loc[scores_df['silhouette'].idxmax(), 'n_metaclusters'])
    return best_k, scores_df
