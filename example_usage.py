#!/usr/bin/env python3
"""
Example usage of the cytometry clustering pipeline

Shows the building blocks on a synthetic sample (no FCS file needed) and the
complete pipeline on an FCS file given on the command line.
"""

import sys

import numpy as np

from aggregation import frequencies, mean_expression
from cluster_assignment import ClusterAssignment
from clustering_pipeline import ClusteringConfig, CytometryClusteringPipeline
from expression_matrix import ExpressionMatrix, arcsinh_transform, select_markers
from metaclustering import merge_metaclusters, select_n_metaclusters
from som_clustering import train_som


def synthetic_sample(n_per_population=500, seed=0):
    """Three populations (T cells, B cells, monocytes) on five channels."""
    rng = np.random.RandomState(seed)
    markers = ['CD3', 'CD19', 'CD14', 'HLA-DR', 'DNA1']
    centres = np.array([
        [400, 5, 5, 20, 300],     # T cells
        [5, 300, 5, 400, 300],    # B cells
        [5, 5, 600, 500, 300],    # monocytes
    ])
    values = np.vstack([np.abs(rng.normal(c, 0.15 * c + 5, size=(n_per_population, 5))) for c in centres])
    return ExpressionMatrix(values, markers)


def building_blocks_example():
    """Run each step by hand."""
    print("=" * 60)
    print("BUILDING BLOCKS EXAMPLE")
    print("=" * 60)

    matrix = arcsinh_transform(synthetic_sample(), cofactor=5.0)
    subset = select_markers(matrix.marker_names)
    print(f"Clustering markers: {[matrix.marker_names[i] for i in subset]}")

    grid, cluster_ids = train_som(matrix, subset, xdim=5, ydim=5, seed=42)
    print(f"Trained {grid.xdim}x{grid.ydim} SOM on {matrix.n_cells} cells")

    best_k, scores = select_n_metaclusters(grid, range(2, 9))
    print("\nSilhouette per metacluster count:")
    print(scores.to_string(index=False))

    metacluster_map = merge_metaclusters(grid, cluster_ids, best_k)
    assignment = ClusterAssignment.from_grid(grid, cluster_ids, metacluster_map)

    _, metacluster_freq = frequencies(assignment)
    print(f"\nMetacluster frequencies ({best_k} metaclusters):")
    for metacluster, freq in metacluster_freq.items():
        print(f"  {metacluster}: {freq:.1f}%")

    print("\nMean expression per metacluster:")
    print(mean_expression(matrix, subset, assignment).round(2))


def pipeline_example(fcs_path):
    """Run the complete pipeline on one FCS file."""
    print("\n" + "=" * 60)
    print("COMPLETE PIPELINE EXAMPLE")
    print("=" * 60)

    config = ClusteringConfig(xdim=10, ydim=10, n_metaclusters=10, seed=42,
                              output_dir='clustering_results')
    pipeline = CytometryClusteringPipeline(config)
    pipeline.run_complete_pipeline(fcs_path)
    return pipeline


def main():
    """Run the examples."""
    building_blocks_example()

    if len(sys.argv) > 1:
        pipeline_example(sys.argv[1])
    else:
        print("\nFor the complete analysis with plots, run:")
        print("  python3 example_usage.py <sample.fcs>")


if __name__ == "__main__":
    main()
