"""Principal component analysis by truncated SVD.

Uses ARPACK through ``scipy.sparse.linalg.svds`` with a seeded start vector
so repeated runs on identical input give identical components. The sign of
each component is fixed so its largest-magnitude loading is positive.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
import logging
import warnings

import numpy as np
import pandas as pd
from scipy.sparse.linalg import ArpackNoConvergence, svds

from ...config import RunConfig
from ...errors import InsufficientDataError, NumericalConvergenceWarning
from ..preprocessing.scaling import ScaledMatrix


@dataclass(frozen=True, eq=False)
class Embedding:
    """PCA result.

    Attributes
    ----------
    cell_embeddings : np.ndarray
        Cells x components, ``U * s``
    loadings : np.ndarray
        Genes x components, orthonormal columns
    singular_values : np.ndarray
        Descending singular values
    variance_ratio : np.ndarray
        Fraction of total variance per component (sums to <= 1)
    cell_ids : pd.Index
        Cell identifiers
    gene_ids : pd.Index
        Gene identifiers of the loadings rows
    converged : bool
        False when the iterative solver hit its budget
    """

    cell_embeddings: np.ndarray
    loadings: np.ndarray = field(repr=False)
    singular_values: np.ndarray = field(repr=False)
    variance_ratio: np.ndarray = field(repr=False)
    cell_ids: pd.Index = field(repr=False)
    gene_ids: pd.Index = field(repr=False)
    converged: bool = True

    @property
    def n_components(self) -> int:
        return self.cell_embeddings.shape[1]

    @property
    def stdev(self) -> np.ndarray:
        """Standard deviation of each component (elbow-plot values)."""
        n = max(self.cell_embeddings.shape[0] - 1, 1)
        return self.singular_values / np.sqrt(n)

    def restrict(self, n_dims: int) -> np.ndarray:
        """Embeddings restricted to the first ``n_dims`` components."""
        return self.cell_embeddings[:, : min(n_dims, self.n_components)]

    def to_dataframe(self) -> pd.DataFrame:
        columns = [f"PC_{i + 1}" for i in range(self.n_components)]
        return pd.DataFrame(self.cell_embeddings, index=self.cell_ids, columns=columns)


def fix_signs(u: np.ndarray, vt: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Flip components so the largest-|loading| entry of each is positive."""
    max_rows = np.argmax(np.abs(vt), axis=1)
    signs = np.sign(vt[np.arange(vt.shape[0]), max_rows])
    signs[signs == 0] = 1.0
    return u * signs, vt * signs[:, np.newaxis]


def truncated_svd(
    matrix: np.ndarray,
    n_components: int,
    random_seed: int = 1337,
    maxiter: Optional[int] = None,
    tol: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
    """Top singular triplets in descending order.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray, bool]
        (u, s, vt, converged). On ARPACK non-convergence a dense SVD is used
        as the best-effort result and ``converged`` is False.
    """
    rng = np.random.RandomState(random_seed)
    v0 = rng.uniform(-1, 1, min(matrix.shape))
    converged = True
    try:
        u, s, vt = svds(
            matrix, k=n_components, solver="arpack", v0=v0, maxiter=maxiter, tol=tol
        )
    except ArpackNoConvergence:
        warnings.warn(
            f"ARPACK did not converge for {n_components} components; "
            "using a dense SVD as best-effort result",
            NumericalConvergenceWarning,
            stacklevel=2,
        )
        converged = False
        u, s, vt = np.linalg.svd(matrix, full_matrices=False)
        u, s, vt = u[:, :n_components], s[:n_components], vt[:n_components]

    order = np.argsort(-s, kind="stable")
    u, s, vt = u[:, order], s[order], vt[order]
    u, vt = fix_signs(u, vt)
    return u, s, vt, converged


class DimReducer:
    """Truncated-SVD PCA on the scaled feature matrix.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration (``n_pca_components``, ``random_seed``)
    logger : logging.Logger, optional
        Logger instance
    maxiter : int, optional
        ARPACK iteration budget (None uses ARPACK's default)

    Example
    -------
    >>> reducer = DimReducer(RunConfig(n_pca_components=50))
    >>> embedding = reducer.run(scaled)
    >>> embedding.variance_ratio[:5]
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
        maxiter: Optional[int] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.maxiter = maxiter

    def resolve_n_components(self, shape: Tuple[int, int], requested: int) -> int:
        """Cap the component count at ``min(shape) - 1``."""
        limit = min(shape) - 1
        if limit < 1:
            raise InsufficientDataError(
                f"PCA needs at least 2 cells and 2 features, got shape {shape}"
            )
        if requested > limit:
            self.logger.warning(
                "Requested %d components but matrix shape %s allows %d; capping",
                requested,
                shape,
                limit,
            )
        return min(requested, limit)

    def run(
        self,
        scaled: ScaledMatrix,
        n_components: Optional[int] = None,
    ) -> Embedding:
        """Compute the top principal components.

        Parameters
        ----------
        scaled : ScaledMatrix
            Scaled selected-feature matrix
        n_components : int, optional
            Overrides ``config.n_pca_components``

        Returns
        -------
        Embedding
            Cell embeddings, loadings and explained-variance fractions
        """
        requested = n_components if n_components is not None else self.config.n_pca_components
        matrix = np.asarray(scaled.X, dtype=np.float64)
        matrix = matrix - matrix.mean(axis=0)
        k = self.resolve_n_components(matrix.shape, requested)

        u, s, vt, converged = truncated_svd(
            matrix, k, random_seed=self.config.random_seed, maxiter=self.maxiter
        )

        total = float(np.sum(matrix ** 2))
        variance_ratio = (s ** 2) / total if total > 0 else np.zeros_like(s)

        if not converged:
            self.logger.warning("PCA solver did not converge; result is best-effort")
        self.logger.info(
            "Computed %d principal components (top-5 variance ratio: %s)",
            k,
            ", ".join(f"{v:.3f}" for v in variance_ratio[:5]),
        )
        return Embedding(
            cell_embeddings=u * s,
            loadings=vt.T.copy(),
            singular_values=s,
            variance_ratio=variance_ratio,
            cell_ids=scaled.cell_ids.copy(),
            gene_ids=scaled.gene_ids.copy(),
            converged=converged,
        )
