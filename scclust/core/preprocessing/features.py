"""Variable feature selection with the variance-stabilizing ("vst") method.

A LOWESS curve of log10(variance) against log10(mean) gives each gene an
expected variance. Counts are standardized with that expectation, clipped
above at ``clip_max`` and the variance of the standardized values ranks the
genes.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...config import RunConfig
from ...errors import InsufficientDataError
from ..matrix import CountMatrix


@dataclass(frozen=True, eq=False)
class FeatureSet:
    """Ranked selection of variable genes.

    Attributes
    ----------
    genes : Tuple[str, ...]
        Selected gene ids, most variable first
    dispersion_rank : Tuple[int, ...]
        Rank of each selected gene (0 = most variable)
    stats : pd.DataFrame
        Per-gene vst table for all genes (mean, variance, variance_expected,
        variance_standardized, rank), indexed by gene id
    """

    genes: Tuple[str, ...]
    dispersion_rank: Tuple[int, ...]
    stats: pd.DataFrame = field(repr=False)

    def __len__(self) -> int:
        return len(self.genes)

    def __iter__(self):
        return iter(self.genes)

    def __contains__(self, gene) -> bool:
        return str(gene) in self.genes

    def top(self, n: int = 10) -> Tuple[str, ...]:
        return self.genes[:n]


def gene_mean_variance(X: sparse.spmatrix) -> Tuple[np.ndarray, np.ndarray]:
    """Per-column mean and unbiased variance of a sparse matrix."""
    n = X.shape[0]
    mean = np.asarray(X.mean(axis=0)).ravel()
    sq_mean = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    variance = (sq_mean - mean ** 2) * n / max(n - 1, 1)
    return mean, np.clip(variance, 0.0, None)


def standardized_variance(
    X: sparse.spmatrix,
    mean: np.ndarray,
    sd: np.ndarray,
    clip_max: float,
) -> np.ndarray:
    """Variance of clipped standardized values, computed without densifying.

    Zeros contribute ``(mean / sd) ** 2`` each; nonzero entries contribute
    their squared standardized value clipped above at ``clip_max``. Genes
    with ``sd == 0`` get 0.
    """
    n_cells = X.shape[0]
    csc = sparse.csc_matrix(X, dtype=np.float64)
    nnz_per_gene = np.diff(csc.indptr)
    cols = np.repeat(np.arange(csc.shape[1]), nnz_per_gene)

    valid = sd > 0
    safe_sd = np.where(valid, sd, 1.0)

    z = (csc.data - mean[cols]) / safe_sd[cols]
    z = np.minimum(z, clip_max)
    sum_sq = np.bincount(cols, weights=z ** 2, minlength=csc.shape[1])

    n_zero = n_cells - nnz_per_gene
    sum_sq += n_zero * (mean / safe_sd) ** 2

    result = sum_sq / max(n_cells - 1, 1)
    result[~valid] = 0.0
    return result


class FeatureSelector:
    """Select the top-K genes by standardized variance.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> selector = FeatureSelector(RunConfig(n_variable_features=2000))
    >>> features = selector.run(qc_result.counts)
    >>> features.top(10)
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def fit_expected_variance(
        self,
        mean: np.ndarray,
        variance: np.ndarray,
    ) -> np.ndarray:
        """Expected variance per gene from the LOWESS mean-variance fit.

        Constant genes get an expected variance of 0.
        """
        expected = np.zeros_like(variance)
        not_const = variance > 0
        n_fit = int(not_const.sum())
        if n_fit < 2:
            raise InsufficientDataError(
                f"Need at least 2 non-constant genes for the vst fit, found {n_fit}"
            )

        log_mean = np.log10(mean[not_const])
        log_var = np.log10(variance[not_const])
        # Small gene sets cannot support a narrow span
        frac = self.config.vst_span if n_fit >= 10 else 1.0
        fitted = lowess(log_var, log_mean, frac=frac, it=0, return_sorted=False)
        if np.isnan(fitted).any():
            self.logger.warning(
                "LOWESS fit produced NaN values; falling back to a linear fit"
            )
            slope, intercept = np.polyfit(log_mean, log_var, 1)
            fitted = slope * log_mean + intercept
        expected[not_const] = 10 ** fitted
        return expected

    def run(self, counts: CountMatrix) -> FeatureSet:
        """Rank genes and select the top ``n_variable_features``.

        Parameters
        ----------
        counts : CountMatrix
            QC-filtered raw counts

        Returns
        -------
        FeatureSet
            min(n_variable_features, n_genes) genes

        Raises
        ------
        InsufficientDataError
            If fewer than 2 genes or cells are available
        """
        cfg = self.config
        if counts.n_genes < 2 or counts.n_cells < 2:
            raise InsufficientDataError(
                f"Feature selection needs >= 2 cells and genes, got {counts.shape}"
            )

        X = counts.X.astype(np.float64)
        mean, variance = gene_mean_variance(X)
        expected = self.fit_expected_variance(mean, variance)

        clip_max = cfg.clip_max if cfg.clip_max is not None else np.sqrt(counts.n_cells)
        std_var = standardized_variance(X, mean, np.sqrt(expected), clip_max)

        order = np.argsort(-std_var, kind="stable")
        ranks = np.empty_like(order)
        ranks[order] = np.arange(len(order))

        n_select = min(cfg.n_variable_features, counts.n_genes)
        if n_select < cfg.n_variable_features:
            self.logger.warning(
                "Requested %d variable features but only %d genes survive QC; "
                "selecting all",
                cfg.n_variable_features,
                counts.n_genes,
            )
        selected = order[:n_select]

        stats = pd.DataFrame(
            {
                "mean": mean,
                "variance": variance,
                "variance_expected": expected,
                "variance_standardized": std_var,
                "rank": ranks,
            },
            index=counts.gene_ids.copy(),
        )
        genes = tuple(counts.gene_ids[selected].tolist())

        self.logger.info(
            "Selected %d variable features (vst, clip_max=%.2f); top: %s",
            len(genes),
            clip_max,
            ", ".join(genes[:10]),
        )
        return FeatureSet(
            genes=genes,
            dispersion_rank=tuple(int(r) for r in range(n_select)),
            stats=stats,
        )
