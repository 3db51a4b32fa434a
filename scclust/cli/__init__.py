"""Command-line interface for scclust.

Example Usage
-------------
    # From command line:
    scclust --help
    scclust run --input data.h5ad --out results/
    scclust markers --input results/scclust.h5ad --cluster 0
    scclust show-config --config run.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
