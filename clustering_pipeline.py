#!/usr/bin/env python3
"""
Single-sample cytometry clustering pipeline.

Runs one FCS file through the full workflow:
1. Load events and marker names
2. asinh transform and selection of the clustering (surface) markers
3. Self-organizing map training and cell assignment
4. Hierarchical metaclustering of the SOM nodes
5. Cluster / metacluster frequencies and mean expression per metacluster
6. UMAP embedding of a random cell subset
7. Heatmap, frequency and embedding plots plus CSV exports
"""

import os
import pickle
import time
import warnings
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import pandas as pd

from aggregation import cluster_mean_expression, frequencies, frequency_table, mean_expression
from cluster_assignment import ClusterAssignment
from cytometry_errors import EmptyInput, InvalidConfiguration
from embedding import embed_cells
from expression_matrix import (DEFAULT_SURFACE_PATTERNS, arcsinh_transform,
                               select_markers, subsample_cells)
from fcs_parser import load_expression_matrix
from metaclustering import merge_metaclusters, select_n_metaclusters
from som_clustering import train_som


@dataclass
class ClusteringConfig:
    """ Configuration of the clustering pipeline """
    # SOM settings
    xdim: int = 10
    ydim: int = 10
    rlen: int = 10
    alpha: Tuple[float, float] = (0.05, 0.01)
    n_train_cells: Optional[int] = None
    seed: int = 42
    # Metaclustering; None picks the count with the best silhouette in metacluster_range
    n_metaclusters: Optional[int] = 10
    metacluster_range: Tuple[int, int] = (2, 20)
    allow_empty_metaclusters: bool = False
    # Preprocessing
    cofactor: float = 5.0
    marker_patterns: Sequence[str] = field(default_factory=lambda: list(DEFAULT_SURFACE_PATTERNS))
    # Visualization
    embed: bool = True
    n_embed_cells: int = 5000
    output_dir: str = 'clustering_results'

    def validate(self):
        """Check parameter combinations before any computation starts."""
        if self.xdim <= 0 or self.ydim <= 0:
            raise InvalidConfiguration(
                f"grid dimensions must be positive, got xdim={self.xdim}, ydim={self.ydim}"
            )
        n_nodes = self.xdim * self.ydim
        if self.n_metaclusters is not None:
            if self.n_metaclusters < 1:
                raise InvalidConfiguration(
                    f"number of metaclusters must be positive, got {self.n_metaclusters}"
                )
            if self.n_metaclusters > n_nodes:
                raise InvalidConfiguration(
                    f"requested {self.n_metaclusters} metaclusters but grid has only {n_nodes} nodes"
                )
        else:
            k_min, k_max = self.metacluster_range
            if k_min < 2 or k_max < k_min:
                raise InvalidConfiguration(f"invalid metacluster range {self.metacluster_range}")
            if n_nodes < 3 or k_min >= n_nodes:
                raise InvalidConfiguration(
                    f"metacluster range {tuple(self.metacluster_range)} cannot be selected "
                    f"on a grid with {n_nodes} nodes (silhouette selection needs at least "
                    f"3 nodes and fewer metaclusters than nodes)"
                )
        if self.rlen <= 0:
            raise InvalidConfiguration(f"number of training epochs must be positive, got rlen={self.rlen}")
        if not self.cofactor > 0:
            raise InvalidConfiguration(f"asinh cofactor must be positive, got {self.cofactor}")
        if not self.marker_patterns:
            raise InvalidConfiguration("at least one marker pattern is required")
        if self.n_embed_cells <= 0:
            raise InvalidConfiguration(f"n_embed_cells must be positive, got {self.n_embed_cells}")


class CytometryClusteringPipeline:
    """SOM + metaclustering pipeline for a single cytometry sample."""

    def __init__(self, config: ClusteringConfig = None):
        self.config = config or ClusteringConfig()
        self.config.validate()

        # Data
        self.raw_matrix = None
        self.matrix = None
        self.subset = None

        # Clustering results
        self.grid = None
        self.assignment = None
        self.metacluster_map = None
        self.metacluster_scores = None

        # Summaries
        self.cluster_freq = None
        self.metacluster_freq = None
        self.expression_by_metacluster = None
        self.cluster_expression = None
        self.empty_metaclusters = []

        # Visualization
        self.embedding = None
        self.embedding_rows = None

        self.timings = {}

    @property
    def subset_markers(self):
        return [self.matrix.marker_names[i] for i in self.subset]

    def load_data(self, fcs_path):
        """Load the events of one FCS file."""
        print("1. LOADING DATA")
        self.raw_matrix = load_expression_matrix(fcs_path)
        print(f"  Loaded {fcs_path}: {self.raw_matrix.n_cells} events, "
              f"{self.raw_matrix.n_markers} channels")
        return self.raw_matrix

    def set_matrix(self, matrix):
        """Use an already loaded (untransformed) expression matrix."""
        self.raw_matrix = matrix
        return self

    def preprocess(self):
        """asinh transform and selection of the clustering markers."""
        print("\n2. PREPROCESSING")
        if self.raw_matrix is None:
            raise ValueError("No data loaded. Call load_data() or set_matrix() first.")
        if self.raw_matrix.n_cells == 0:
            raise EmptyInput("expression matrix has no cells")

        self.matrix = arcsinh_transform(self.raw_matrix, cofactor=self.config.cofactor)
        self.subset = select_markers(self.matrix.marker_names, self.config.marker_patterns)
        if not self.subset:
            raise EmptyInput(
                f"no marker name contains any of {list(self.config.marker_patterns)}"
            )

        print(f"  asinh transform with cofactor {self.config.cofactor}")
        print(f"  {len(self.subset)} clustering markers: {', '.join(self.subset_markers)}")

    def train_som(self):
        """Train the SOM and assign every cell to its nearest node."""
        print(f"\n3. TRAINING SOM ({self.config.xdim}x{self.config.ydim} grid, {self.config.rlen} epochs)")
        start = time.time()
        self.grid, cluster_ids = train_som(
            self.matrix, self.subset, self.config.xdim, self.config.ydim, self.config.seed,
            rlen=self.config.rlen, alpha=self.config.alpha,
            n_train_cells=self.config.n_train_cells,
        )
        self.assignment = ClusterAssignment.from_grid(self.grid, cluster_ids)
        self.timings['som'] = time.time() - start

        empty = self.assignment.empty_clusters()
        print(f"  Assigned {self.assignment.n_cells} cells to {self.grid.n_nodes} nodes "
              f"in {self.timings['som']:.1f}s")
        if empty:
            print(f"  {len(empty)} node(s) without cells: {empty}")

    def build_metaclusters(self):
        """Merge SOM nodes into metaclusters."""
        print("\n4. METACLUSTERING")
        n_metaclusters = self.config.n_metaclusters
        if n_metaclusters is None:
            k_min, k_max = self.config.metacluster_range
            n_metaclusters, self.metacluster_scores = select_n_metaclusters(
                self.grid, range(k_min, k_max + 1))
            print(f"  Selected {n_metaclusters} metaclusters by silhouette score")

        self.metacluster_map = merge_metaclusters(self.grid, self.assignment, n_metaclusters)
        self.assignment = self.assignment.with_metaclusters(self.metacluster_map)
        print(f"  Merged {self.grid.n_nodes} nodes into {self.metacluster_map.n_metaclusters} metaclusters")

    def aggregate(self):
        """Frequencies and mean expression tables."""
        print("\n5. AGGREGATING")
        self.cluster_freq, self.metacluster_freq = frequencies(self.assignment)
        self.empty_metaclusters = self.assignment.empty_metaclusters()

        if self.empty_metaclusters and self.config.allow_empty_metaclusters:
            warnings.warn(
                f"metacluster(s) {self.empty_metaclusters} have no cells; "
                f"mean expression is reported for the populated metaclusters only"
            )
            populated = [m for m in range(1, self.metacluster_map.n_metaclusters + 1)
                         if m not in self.empty_metaclusters]
            self.expression_by_metacluster = mean_expression(
                self.matrix, self.subset, self.assignment, metaclusters=populated)
        else:
            self.expression_by_metacluster = mean_expression(self.matrix, self.subset, self.assignment)

        self.cluster_expression = cluster_mean_expression(self.matrix, self.subset, self.assignment)

        for metacluster, freq in self.metacluster_freq.items():
            print(f"  Metacluster {metacluster}: {freq:.2f}%")

    def compute_embedding(self):
        """UMAP of a random subset of cells on the clustering markers."""
        print("\n6. EMBEDDING")
        self.embedding_rows = subsample_cells(self.matrix.n_cells, self.config.n_embed_cells,
                                              random_state=self.config.seed)
        values = self.matrix.columns(self.subset)[self.embedding_rows]
        self.embedding = embed_cells(values, random_state=self.config.seed)
        print(f"  Embedded {len(self.embedding_rows)} cells")

    def create_visualizations(self):
        """Write heatmap, frequency and embedding plots to the output directory."""
        import matplotlib
        matplotlib.use('Agg')
        from visualization import (plot_embedding, plot_frequencies,
                                   plot_marker_embedding_grid, plot_metacluster_heatmap)

        print("\n7. CREATING VISUALIZATIONS")
        os.makedirs(self.config.output_dir, exist_ok=True)
        out = self.config.output_dir

        paths = [
            plot_metacluster_heatmap(self.expression_by_metacluster,
                                     os.path.join(out, 'metacluster_heatmap.png')),
            plot_frequencies(self.metacluster_freq, os.path.join(out, 'metacluster_frequencies.png')),
        ]
        if self.embedding is not None:
            labels = self.assignment.metacluster_ids[self.embedding_rows]
            paths.append(plot_embedding(self.embedding, labels,
                                        os.path.join(out, 'umap_metaclusters.png')))
            frame = pd.DataFrame(self.matrix.columns(self.subset)[self.embedding_rows],
                                 columns=self.subset_markers)
            paths.append(plot_marker_embedding_grid(self.embedding, frame,
                                                    os.path.join(out, 'umap_markers.png')))

        for path in paths:
            print(f"  - {path}")
        return paths

    def save_results(self):
        """Save assignment, map, frequency and expression tables plus the trained grid."""
        print("\n8. SAVING RESULTS")
        out = self.config.output_dir
        os.makedirs(out, exist_ok=True)

        self.assignment.to_frame().to_csv(os.path.join(out, 'cell_assignments.csv'), index_label='cell')
        self.metacluster_map.to_frame().to_csv(os.path.join(out, 'cluster_to_metacluster.csv'), index=False)
        frequency_table(self.assignment, level='cluster').to_csv(
            os.path.join(out, 'cluster_frequencies.csv'), index=False)
        frequency_table(self.assignment, level='metacluster').to_csv(
            os.path.join(out, 'metacluster_frequencies.csv'), index=False)
        self.expression_by_metacluster.to_csv(os.path.join(out, 'metacluster_mean_expression.csv'))
        self.cluster_expression.to_csv(os.path.join(out, 'cluster_mean_expression.csv'))
        if self.metacluster_scores is not None:
            self.metacluster_scores.to_csv(os.path.join(out, 'metacluster_selection.csv'), index=False)
        if self.embedding is not None:
            pd.DataFrame({'cell': self.embedding_rows,
                          'UMAP1': self.embedding[:, 0],
                          'UMAP2': self.embedding[:, 1]}).to_csv(
                os.path.join(out, 'umap_coordinates.csv'), index=False)

        with open(os.path.join(out, 'som_grid.pkl'), 'wb') as f:
            pickle.dump(self.grid, f)

        print(f"Results saved to {out}/")

    def run_clustering(self):
        """Preprocess, cluster and aggregate the loaded matrix (no plots, no files)."""
        self.preprocess()
        self.train_som()
        self.build_metaclusters()
        self.aggregate()
        return self.assignment

    def run_complete_pipeline(self, fcs_path=None):
        """Run the whole workflow; fcs_path may be omitted if set_matrix() was used."""
        print("=" * 60)
        print("CYTOMETRY CLUSTERING PIPELINE")
        print("=" * 60)
        if fcs_path is not None:
            self.load_data(fcs_path)
        self.run_clustering()
        if self.config.embed:
            self.compute_embedding()
        self.create_visualizations()
        self.save_results()

        print("\n" + "=" * 60)
        print("PIPELINE COMPLETED")
        print("=" * 60)
        print(f"✓ {self.assignment.n_cells} cells in {self.grid.n_nodes} clusters "
              f"and {self.metacluster_map.n_metaclusters} metaclusters")
        if self.empty_metaclusters:
            print(f"✓ Empty metaclusters reported: {self.empty_metaclusters}")
        return self


def main():
    """Main execution function."""
    import sys

    if len(sys.argv) < 2:
        print("Usage: python clustering_pipeline.py <fcs_file> [n_metaclusters] [output_dir]")
        sys.exit(1)

    config = ClusteringConfig()
    if len(sys.argv) > 2:
        config.n_metaclusters = int(sys.argv[2])
    if len(sys.argv) > 3:
        config.output_dir = sys.argv[3]

    try:
        pipeline = CytometryClusteringPipeline(config)
        pipeline.run_complete_pipeline(sys.argv[1])
    except Exception as e:
        print(f"Pipeline failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
