"""Per-gene standardization of the selected features.

Optionally regresses named metadata covariates out of each gene first and
scales the residuals.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from ...config import RunConfig
from ...errors import ConfigurationError, DataIntegrityError
from ..matrix import CellMetadata
from .features import FeatureSet
from .normalization import NormalizedMatrix


@dataclass(frozen=True, eq=False)
class ScaledMatrix:
    """Dense standardized expression restricted to a FeatureSet.

    Attributes
    ----------
    X : np.ndarray
        Scaled values, cells x selected genes
    cell_ids : pd.Index
        Cell identifiers
    gene_ids : pd.Index
        Selected gene identifiers, in FeatureSet order
    center : np.ndarray
        Per-gene mean removed before scaling
    scale : np.ndarray
        Per-gene standard deviation (0 for constant genes)
    regressed : Tuple[str, ...]
        Covariates regressed out before scaling
    """

    X: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index
    center: np.ndarray = field(repr=False)
    scale: np.ndarray = field(repr=False)
    regressed: Tuple[str, ...] = ()

    @property
    def shape(self):
        return self.X.shape

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.cell_ids, columns=self.gene_ids)


def regress_out(values: np.ndarray, covariates: np.ndarray) -> np.ndarray:
    """Residuals of a least-squares fit of each column on the covariates.

    Parameters
    ----------
    values : np.ndarray
        Cells x genes matrix
    covariates : np.ndarray
        Cells x covariates matrix; an intercept column is added

    Returns
    -------
    np.ndarray
        Residuals with the same shape as ``values``
    """
    design = np.column_stack([np.ones(values.shape[0]), covariates])
    coef, _, _, _ = np.linalg.lstsq(design, values, rcond=None)
    return values - design @ coef


def standardize(
    values: np.ndarray,
    clip: Optional[float] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Center and scale columns; zero-variance columns become 0.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        (scaled, mean, std)
    """
    mean = values.mean(axis=0)
    if values.shape[0] > 1:
        std = values.std(axis=0, ddof=1)
    else:
        std = np.zeros(values.shape[1])
    centered = values - mean
    # Round-off on constant columns leaves std at ~1e-17, not exactly 0
    nonzero = std > np.finfo(np.float64).eps * np.maximum(np.abs(mean), 1.0)
    std = np.where(nonzero, std, 0.0)
    scaled = np.zeros_like(centered)
    scaled[:, nonzero] = centered[:, nonzero] / std[nonzero]
    if clip is not None:
        np.clip(scaled, -clip, clip, out=scaled)
    return scaled, mean, std


class Scaler:
    """Scale selected features to zero mean and unit variance.

    Parameters
    ----------
    config : RunConfig, optional
        Run configuration. ``regress_covariates`` and ``scale_max`` are used.
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> scaler = Scaler(RunConfig(regress_covariates=["percent_mito"]))
    >>> scaled = scaler.run(normalized, features, metadata)
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or RunConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _covariate_matrix(
        self,
        metadata: Optional[CellMetadata],
        covariates: Sequence[str],
        cell_ids: pd.Index,
    ) -> np.ndarray:
        if metadata is None:
            raise ConfigurationError(
                f"Covariate regression ({list(covariates)}) requires cell metadata"
            )
        metadata.validate_against(cell_ids)
        missing = [c for c in covariates if c not in metadata.schema]
        if missing:
            raise ConfigurationError(f"Unknown covariate columns: {missing}")
        columns = []
        for name in covariates:
            series = metadata[name]
            if not pd.api.types.is_numeric_dtype(series):
                raise ConfigurationError(f"Covariate '{name}' is not numeric")
            columns.append(series.to_numpy(dtype=float))
        return np.column_stack(columns)

    def run(
        self,
        normalized: NormalizedMatrix,
        features: FeatureSet,
        metadata: Optional[CellMetadata] = None,
        covariates: Optional[Sequence[str]] = None,
    ) -> ScaledMatrix:
        """Scale the FeatureSet columns of the normalized matrix.

        Parameters
        ----------
        normalized : NormalizedMatrix
            Normalized expression
        features : FeatureSet
            Genes to keep, in order
        metadata : CellMetadata, optional
            Required when regressing covariates
        covariates : Sequence[str], optional
            Overrides ``config.regress_covariates``

        Returns
        -------
        ScaledMatrix
            Dense scaled matrix
        """
        covariates = list(
            covariates if covariates is not None else self.config.regress_covariates
        )
        if not len(features):
            raise DataIntegrityError("FeatureSet is empty")

        positions = normalized.gene_index(features.genes)
        values = normalized.X[:, positions].toarray().astype(np.float64)

        if covariates:
            design = self._covariate_matrix(metadata, covariates, normalized.cell_ids)
            self.logger.info(
                "Regressing out %s from %d genes", ", ".join(covariates), values.shape[1]
            )
            values = regress_out(values, design)

        scaled, mean, std = standardize(values, clip=self.config.scale_max)
        n_constant = int((std == 0).sum())
        if n_constant:
            self.logger.info("%d constant genes scaled to 0", n_constant)

        self.logger.info(
            "Scaled %d cells x %d features (clip=%.1f)",
            scaled.shape[0],
            scaled.shape[1],
            self.config.scale_max,
        )
        return ScaledMatrix(
            X=scaled,
            cell_ids=normalized.cell_ids.copy(),
            gene_ids=pd.Index(list(features.genes), name="gene_id"),
            center=mean,
            scale=std,
            regressed=tuple(covariates),
        )
