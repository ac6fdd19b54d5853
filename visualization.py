#!/usr/bin/env python3
"""
Plots for clustering results: metacluster heatmap, frequencies and UMAP views.

All functions only read the results they are given and write a PNG file.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


def plot_metacluster_heatmap(expression_by_metacluster, path, title='Mean expression per metacluster'):
    """Heatmap of metaclusters (rows) x markers (columns)."""
    n_rows, n_cols = expression_by_metacluster.shape
    fig, ax = plt.subplots(figsize=(max(6, 0.45 * n_cols + 2), max(4, 0.4 * n_rows + 1.5)))
    sns.heatmap(expression_by_metacluster, cmap='viridis', ax=ax,
                cbar_kws={'label': 'asinh expression'})
    ax.set_xlabel('Marker')
    ax.set_ylabel('Metacluster')
    ax.set_title(title)
    plt.tight_layout()
    plt.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path


def plot_frequencies(metacluster_freq, path):
    """Bar chart of the percentage of cells per metacluster."""
    ids = sorted(metacluster_freq)
    fig, ax = plt.subplots(figsize=(max(6, 0.4 * len(ids) + 2), 4))
    ax.bar([str(i) for i in ids], [metacluster_freq[i] for i in ids], color='steelblue', alpha=0.8)
    ax.set_xlabel('Metacluster')
    ax.set_ylabel('Cells (%)')
    ax.set_title('Metacluster frequencies')
    ax.grid(True, axis='y', alpha=0.3)
    plt.tight_layout()
    plt.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path


def plot_embedding(embedding, labels, path, title='UMAP by metacluster'):
    """Scatter plot of the embedding coloured by (meta)cluster id."""
    # ids are categorical from here on
    labels = pd.Categorical(np.asarray(labels).astype(int))
    fig, ax = plt.subplots(figsize=(8, 7))
    sns.scatterplot(x=embedding[:, 0], y=embedding[:, 1], hue=labels,
                    palette='tab20' if len(labels.categories) > 10 else 'tab10',
                    s=3, linewidth=0, alpha=0.7, ax=ax)
    ax.set_xlabel('UMAP1')
    ax.set_ylabel('UMAP2')
    ax.set_title(title)
    ax.legend(title='Metacluster', bbox_to_anchor=(1.02, 1), loc='upper left',
              markerscale=4, fontsize='small')
    plt.tight_layout()
    plt.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path


def plot_marker_embedding_grid(embedding, frame, path, n_cols=4):
    """
    Grid of embedding scatter plots, one per column of `frame`, coloured by expression.

    `frame` holds the marker values of the embedded cells in embedding order.
    """
    markers = [str(c) for c in frame.columns]
    n_rows = max(1, (len(markers) + n_cols - 1) // n_cols)

    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.6 * n_rows))
    axes = np.atleast_1d(axes).flatten()

    for idx, marker in enumerate(markers):
        ax = axes[idx]
        # positional access, marker names may repeat
        values = frame.iloc[:, idx].to_numpy()
        points = ax.scatter(embedding[:, 0], embedding[:, 1], c=values,
                            cmap='viridis', s=1, linewidths=0)
        fig.colorbar(points, ax=ax, fraction=0.046)
        ax.set_title(marker)
        ax.set_xticks([])
        ax.set_yticks([])

    # Hide unused subplots
    for idx in range(len(markers), len(axes)):
        axes[idx].set_visible(False)

    plt.tight_layout()
    plt.savefig(path, dpi=200, bbox_inches='tight')
    plt.close(fig)
    return path
