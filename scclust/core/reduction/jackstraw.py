"""JackStraw permutation significance for principal components.

Each replicate shuffles a small random subset of genes independently
across cells, recomputes the PCA and records the shuffled genes' loadings.
Those loadings form a null distribution for the real loadings. A component
is significant when it carries more low-p genes than a uniform null
predicts.

Example
-------
>>> jackstraw = JackStraw(RunConfig(), n_replicates=100)
>>> result = jackstraw.run(scaled, embedding, n_dims=20)
>>> result.scores.head()
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from ...config import RunConfig
from ...errors import ConfigurationError, InsufficientDataError
from ...utils.cancel import CancellationToken, check
from ...utils.stats import empirical_p_values, two_proportion_test
from ..preprocessing.scaling import ScaledMatrix
from .pca import Embedding, truncated_svd


@dataclass(frozen=True, eq=False)
class JackStrawResult:
    """JackStraw output.

    Attributes
    ----------
    empirical_p : pd.DataFrame
        Genes x PCs empirical p-values of the observed loadings
    null_loadings : np.ndarray
        (replicates * permuted genes) x PCs absolute null loadings
    scores : pd.DataFrame
        Per-PC overall p-value (column ``score``) and number of genes
        below ``score_thresh`` (column ``n_significant``)
    n_replicates : int
        Replicates run
    """

    empirical_p: pd.DataFrame
    null_loadings: np.ndarray = field(repr=False)
    scores: pd.DataFrame = field(default_factory=pd.DataFrame)
    n_replicates: int = 0

    def significant_pcs(self, alpha: float = 0.05) -> List[int]:
        """1-based indices of PCs with score below ``alpha``."""
        return [int(pc) for pc in self.scores.index[self.scores["score"] < alpha]]


def _replicate_null(
    matrix: np.ndarray,
    n_dims: int,
    n_permuted: int,
    seed: int,
) -> np.ndarray:
    """Absolute loadings of randomly permuted genes for one replicate."""
    rng = np.random.default_rng(seed)
    genes = rng.choice(matrix.shape[1], size=n_permuted, replace=False)
    modified = matrix.copy()
    for gene in genes:
        modified[:, gene] = rng.permutation(modified[:, gene])
    modified -= modified.mean(axis=0)
    _, _, vt, _ = truncated_svd(modified, n_dims, random_seed=seed)
    return np.abs(vt[:, genes].T)


class JackStraw:
    """Permutation test for PCA significance.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration (``random_seed``, ``n_jobs``)
    logger : logging.Logger, optional
        Logger instance
    n_replicates : int
        Number of permutation replicates
    prop_freq : float
        Fraction of genes permuted per replicate (at least 3 genes)
    score_thresh : float
        p-value threshold for counting significant genes per PC
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
        n_replicates: int = 100,
        prop_freq: float = 0.01,
        score_thresh: float = 1e-5,
    ):
        if n_replicates < 1:
            raise ConfigurationError("n_replicates must be >= 1")
        if not 0 < prop_freq <= 1:
            raise ConfigurationError("prop_freq must be in (0, 1]")
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.n_replicates = n_replicates
        self.prop_freq = prop_freq
        self.score_thresh = score_thresh

    def score(self, empirical_p: pd.DataFrame) -> pd.DataFrame:
        """Score each PC against the uniform null.

        Parameters
        ----------
        empirical_p : pd.DataFrame
            Genes x PCs empirical p-values

        Returns
        -------
        pd.DataFrame
            Indexed by 1-based PC number with ``score`` and ``n_significant``
        """
        n_genes = empirical_p.shape[0]
        expected = int(np.floor(n_genes * self.score_thresh))
        records = []
        for i, column in enumerate(empirical_p.columns):
            n_sig = int((empirical_p[column] <= self.score_thresh).sum())
            score = 1.0 if n_sig == 0 else two_proportion_test(n_sig, expected, n_genes)
            records.append({"pc": i + 1, "score": score, "n_significant": n_sig})
        return pd.DataFrame(records).set_index("pc")

    def run(
        self,
        scaled: ScaledMatrix,
        embedding: Embedding,
        n_dims: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> JackStrawResult:
        """Run the permutation replicates and score the PCs.

        Parameters
        ----------
        scaled : ScaledMatrix
            Matrix the embedding was computed from
        embedding : Embedding
            Observed PCA result
        n_dims : int, optional
            PCs to test (default: all computed, at most 20)
        token : CancellationToken, optional
            Checked between batches of replicates

        Returns
        -------
        JackStrawResult
            Empirical p-values and PC scores
        """
        if not scaled.gene_ids.equals(embedding.gene_ids):
            raise ConfigurationError("Embedding was not computed from this scaled matrix")

        n_dims = min(n_dims or 20, embedding.n_components)
        matrix = np.asarray(scaled.X, dtype=np.float64)
        n_genes = matrix.shape[1]
        n_permuted = max(3, int(round(self.prop_freq * n_genes)))
        if n_permuted > n_genes or n_dims >= min(matrix.shape):
            raise InsufficientDataError(
                f"JackStraw needs more than {n_permuted} genes and {n_dims} components"
            )

        n_jobs = self.config.n_jobs
        batch = max(abs(n_jobs), 1) * 4
        seeds = [self.config.random_seed + r for r in range(self.n_replicates)]
        self.logger.info(
            "JackStraw: %d replicates, %d genes permuted each, %d PCs",
            self.n_replicates,
            n_permuted,
            n_dims,
        )

        null_parts: List[np.ndarray] = []
        for start in range(0, len(seeds), batch):
            check(token, f"JackStraw replicate {start}")
            chunk = seeds[start:start + batch]
            if n_jobs == 1:
                null_parts.extend(
                    _replicate_null(matrix, n_dims, n_permuted, seed) for seed in chunk
                )
            else:
                null_parts.extend(
                    Parallel(n_jobs=n_jobs)(
                        delayed(_replicate_null)(matrix, n_dims, n_permuted, seed)
                        for seed in chunk
                    )
                )

        null = np.vstack(null_parts)
        observed = np.abs(embedding.loadings[:, :n_dims])
        p_values = np.column_stack(
            [empirical_p_values(observed[:, j], null[:, j]) for j in range(n_dims)]
        )
        empirical_p = pd.DataFrame(
            p_values,
            index=embedding.gene_ids.copy(),
            columns=[f"PC_{j + 1}" for j in range(n_dims)],
        )
        scores = self.score(empirical_p)
        self.logger.info(
            "JackStraw significant PCs (p < 0.05): %s",
            ", ".join(str(pc) for pc in scores.index[scores["score"] < 0.05]) or "none",
        )
        return JackStrawResult(
            empirical_p=empirical_p,
            null_loadings=null,
            scores=scores,
            n_replicates=self.n_replicates,
        )
