"""Command-line interface for scclust.

Provides CLI commands for running the clustering pipeline and marker search.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
import yaml

from .. import __version__
from ..config import MARKER_TESTS, RunConfig
from ..errors import ScclustError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("scclust")


def load_config(config_path: Optional[str], overrides: dict) -> RunConfig:
    """Config from YAML (or defaults) with command-line overrides applied."""
    base = RunConfig.from_yaml(Path(config_path)) if config_path else RunConfig()
    data = base.to_dict()
    data.update({k: v for k, v in overrides.items() if v is not None})
    config = RunConfig.from_dict(data)
    config.validate()
    return config


def load_counts(input_path: str, input_format: str):
    """Read counts from an h5ad file, a 10x directory or a CSV table."""
    path = Path(input_path)
    if input_format == "auto":
        if path.is_dir():
            input_format = "10x"
        elif path.suffix == ".h5ad":
            input_format = "h5ad"
        else:
            input_format = "csv"

    if input_format == "csv":
        from ..io.csv import load_count_table

        return load_count_table(path, sep="\t" if path.suffix in (".tsv", ".txt") else ",")

    # Import here to avoid slow startup
    from ..io.anndata_io import read_10x_counts, read_h5ad_counts

    if input_format == "10x":
        return read_10x_counts(path)
    return read_h5ad_counts(path)


@click.group()
@click.version_option(version=__version__, prog_name="scclust")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """scclust: single-cell RNA-seq clustering and marker detection.

    Runs QC, normalization, variable feature selection, scaling, PCA,
    shared-neighbor graph construction, Louvain clustering and marker
    testing on a cell-by-gene count matrix.

    Examples:

        # Full pipeline on a 10x directory
        scclust run --input filtered_gene_bc_matrices/hg19 --out results/

        # Markers of cluster 1 against clusters 0 and 3
        scclust markers --input results/scclust.h5ad --cluster 1 --reference 0 --reference 3

        # Print the resolved configuration
        scclust show-config --config run.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Counts: .h5ad file, 10x matrix directory or CSV table")
@click.option("--format", "input_format", type=click.Choice(["auto", "h5ad", "10x", "csv"]),
              default="auto", help="Input format")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
@click.option("--resolution", type=float, default=None, help="Louvain resolution")
@click.option("--n-pcs", type=int, default=None, help="Principal components to compute")
@click.option("--dims", type=int, default=None, help="PCs used for the neighbor graph")
@click.option("--k", "neighbor_k", type=int, default=None, help="Nearest neighbors per cell")
@click.option("--seed", type=int, default=None, help="Random seed")
@click.option("--n-jobs", type=int, default=None, help="Parallel workers")
@click.option("--jackstraw", is_flag=True, help="Also run JackStraw PC significance")
@click.option("--log-dir", type=click.Path(), default=None,
              help="Directory for run logs (default: <out>/logs)")
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    input_format: str,
    output_path: str,
    config_path: Optional[str],
    resolution: Optional[float],
    n_pcs: Optional[int],
    dims: Optional[int],
    neighbor_k: Optional[int],
    seed: Optional[int],
    n_jobs: Optional[int],
    jackstraw: bool,
    log_dir: Optional[str],
) -> None:
    """Run the full clustering pipeline.

    Writes scclust.h5ad (all results), clusters.csv and markers.csv to the
    output directory.
    """
    logger = ctx.obj["logger"]

    # Import here to avoid slow startup
    from ..io.anndata_io import session_to_anndata, write_h5ad
    from ..io.csv import ensure_output_dir, write_dataframe
    from ..pipeline import PipelineLogger, run_pipeline

    try:
        config = load_config(
            config_path,
            {
                "cluster_resolution": resolution,
                "n_pca_components": n_pcs,
                "n_neighbor_dims": dims,
                "neighbor_k": neighbor_k,
                "random_seed": seed,
                "n_jobs": n_jobs,
            },
        )
        out_dir = ensure_output_dir(output_path)
        pipeline_logger = PipelineLogger(
            log_dir or str(out_dir / "logs"),
            log_level="DEBUG" if ctx.obj["debug"] else "INFO",
            console=False,
        )
        pipeline_logger.setup()

        counts = load_counts(input_path, input_format)
        logger.info("Input: %d cells x %d genes", counts.n_cells, counts.n_genes)
        session = run_pipeline(counts, config, logger=pipeline_logger, jackstraw=jackstraw)

        output_file = write_h5ad(session_to_anndata(session), out_dir / "scclust.h5ad")
        write_dataframe(
            session.get("clusters").to_series().rename("cluster").to_frame(),
            out_dir / "clusters.csv",
            index=True,
        )
        write_dataframe(session.get("markers").combined(), out_dir / "markers.csv")
        with open(out_dir / "config.yaml", "w") as f:
            yaml.safe_dump({"run": config.to_dict()}, f, sort_keys=False)
    except ScclustError as e:
        click.echo(f"Pipeline failed: {e}", err=True)
        sys.exit(1)

    assignment = session.get("clusters")
    click.echo(
        f"Clustering complete: {assignment.n_clusters} clusters "
        f"(modularity {assignment.modularity:.3f})"
    )
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Result file written by 'scclust run'")
@click.option("--cluster", type=int, default=None,
              help="Cluster to test (default: every cluster vs rest)")
@click.option("--reference", "reference", type=int, multiple=True,
              help="Reference cluster(s); repeat for several (default: all other cells)")
@click.option("--test", type=click.Choice(list(MARKER_TESTS)), default=None,
              help="Marker test")
@click.option("--min-pct", type=float, default=None, help="Minimum detection fraction")
@click.option("--logfc", "logfc_threshold", type=float, default=None,
              help="Minimum |avg_log2FC|")
@click.option("--only-pos", is_flag=True, default=None, help="Report positive markers only")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
@click.option("--out", "-o", "output_path", type=click.Path(), default=None,
              help="CSV output (default: print the top markers)")
@click.option("--top", type=int, default=10, help="Rows printed per cluster")
@click.pass_context
def markers(
    ctx: click.Context,
    input_path: str,
    cluster: Optional[int],
    reference: Tuple[int, ...],
    test: Optional[str],
    min_pct: Optional[float],
    logfc_threshold: Optional[float],
    only_pos: Optional[bool],
    config_path: Optional[str],
    output_path: Optional[str],
    top: int,
) -> None:
    """Find marker genes on a finished run."""
    logger = ctx.obj["logger"]
    if reference and cluster is None:
        raise click.UsageError("--reference requires --cluster")

    # Import here to avoid slow startup
    import scanpy as sc

    from ..core.markers import MarkerTester
    from ..io.anndata_io import assignment_from_anndata, normalized_from_anndata
    from ..io.csv import write_dataframe

    try:
        config = load_config(
            config_path,
            {
                "marker_test": test,
                "min_pct": min_pct,
                "logfc_threshold": logfc_threshold,
                "only_pos": only_pos or None,
            },
        )
        adata = sc.read_h5ad(input_path)
        normalized = normalized_from_anndata(adata)
        assignment = assignment_from_anndata(adata)
        logger.info("Loaded %d cells, %d clusters", adata.n_obs, assignment.n_clusters)

        tester = MarkerTester(config, logger)
        if cluster is None:
            table = tester.find_all_markers(normalized, assignment).combined()
        else:
            result = tester.find_cluster_markers(
                normalized,
                assignment,
                cluster,
                reference_clusters=list(reference) or None,
            )
            table = result.to_dataframe()
            table.insert(0, "cluster", cluster)
    except ScclustError as e:
        click.echo(f"Marker search failed: {e}", err=True)
        sys.exit(1)

    if output_path:
        output_file = write_dataframe(table, output_path)
        click.echo(f"Markers saved to: {output_file}")
    else:
        shown = table.groupby("cluster", sort=True).head(top)
        click.echo(shown.to_string(index=False))


@cli.command("show-config")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True),
              help="Run configuration file (YAML)")
@click.pass_context
def show_config(ctx: click.Context, config_path: Optional[str]) -> None:
    """Validate and print the resolved run configuration."""
    try:
        config = load_config(config_path, {})
    except ScclustError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)
    click.echo(yaml.safe_dump({"run": config.to_dict()}, sort_keys=False).rstrip())


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
