# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData
from ._utils import (
    _broadcast_offset,
    _design_matrix,
    _get_counts,
    _glm_residuals_python,
    _glm_residuals_R,
    _upper_quartile_factors,
)


logger = logging.getLogger("ruvseqpy")


def filter_genes(
    adata: AnnData,
    min_count: int = 5,
    min_samples: int = 2,
    layer: str | None = None,
    inplace: bool = True,
) -> AnnData | None:
    """
    Keep genes with more than ``min_count`` reads in at least ``min_samples`` samples.

    :param adata: samples x genes adata object with raw counts
    :type adata: AnnData
    :param min_count: reads a gene must exceed in a sample, defaults to 5
    :type min_count: int, optional
    :param min_samples: number of samples in which a gene must exceed ``min_count``, defaults to 2
    :type min_samples: int, optional
    :param layer: ``adata.layers[layer]`` holds counts, ``adata.X`` if None, defaults to None
    :type layer: str | None, optional
    :param inplace: if to subset adata or return a filtered copy, defaults to True
    :type inplace: bool, optional
    :return: filtered copy of adata if ``inplace`` is False
    :rtype: AnnData | None
    """
    counts = _get_counts(adata, layer)
    keep = (counts > min_count).sum(axis=0) >= min_samples

    logger.info(
        "filtered out %i genes that are expressed above %i reads in less than %i samples",
        (~keep).sum(),
        min_count,
        min_samples,
    )

    if not inplace:
        return adata[:, keep].copy()
    adata._inplace_subset_var(keep)  # pylint: disable=W0212
    return None


def upper_quartile_normalize(
    adata: AnnData,
    layer: str | None = None,
    round: bool = True,  # pylint: disable=W0622
    offset: bool = False,
    key_added: str = "uq",
) -> None:
    """
    Between-sample upper-quartile normalization: counts of every sample are divided
    by its 75th percentile relative to the mean 75th percentile over samples.

    Adds normalized counts to ``adata.layers[key_added + "_normalized"]`` and,
    if ``offset`` is True, ``log(counts + 0.1) - log(normalized + 0.1)`` to
    ``adata.layers[key_added + "_offset"]``, which can be passed as GLM offset.

    :param adata: samples x genes adata object with raw counts
    :type adata: AnnData
    :param layer: ``adata.layers[layer]`` holds counts, ``adata.X`` if None, defaults to None
    :type layer: str | None, optional
    :param round: if to round normalized counts, defaults to True
    :type round: bool, optional
    :param offset: if to save the offset layer as well, defaults to False
    :type offset: bool, optional
    :param key_added: prefix of the layers to write, defaults to "uq"
    :type key_added: str, optional
    """
    counts = _get_counts(adata, layer)

    # [N]
    uq = np.quantile(counts, 0.75, axis=1)
    if np.any(uq == 0):
        raise ValueError(
            "Upper quartile is zero for some samples, filter lowly expressed genes first"
        )
    factors = uq / uq.mean()

    normalized = counts / factors[:, np.newaxis]
    if round:
        normalized = np.round(normalized)

    adata.layers[f"{key_added}_normalized"] = normalized
    adata.obs[f"{key_added}_factor"] = factors
    if offset:
        adata.layers[f"{key_added}_offset"] = np.log(counts + 0.1) - np.log(
            normalized + 0.1
        )


def calc_norm_factors(
    adata: AnnData,
    layer: str | None = None,
    p: float = 0.75,
) -> None:
    """
    Upper-quartile normalization factors as computed by edgeR ``calcNormFactors``:
    ``p``-quantile of counts scaled by library size, normalized to geometric mean 1.
    Saves them to ``adata.obs["norm_factors"]`` and library sizes to ``adata.obs["lib_size"]``.

    :param adata: samples x genes adata object with raw counts
    :type adata: AnnData
    :param layer: ``adata.layers[layer]`` holds counts, ``adata.X`` if None, defaults to None
    :type layer: str | None, optional
    :param p: quantile to use, defaults to 0.75
    :type p: float, optional
    """
    lib_size, norm_factors = _upper_quartile_factors(_get_counts(adata, layer), p=p)
    adata.obs["lib_size"] = lib_size
    adata.obs["norm_factors"] = norm_factors


def glm_residuals(
    adata: AnnData,
    design: str | np.ndarray | pd.DataFrame,
    flavor: str = "python",
    dispersion: float | np.ndarray | None = None,
    offset: str | np.ndarray | None = None,
    layer: str | None = None,
    key_added: str = "deviance_residuals",
    verbose: bool = False,
    **glm_kwargs,
) -> None:
    """
    Fit a first-pass negative binomial GLM of counts on the covariates of interest only
    and save its deviance residuals to ``adata.layers[key_added]``.
    These are the input of :func:`ruvseqpy.tl.ruv_r`.

    :param adata: samples x genes adata object with raw counts
    :type adata: AnnData
    :param design: patsy formula over ``adata.obs`` (e.g. ``"~ group"``) or [N, p] design matrix
    :type design: str | np.ndarray | pd.DataFrame
    :param flavor: if to fit the GLM with inmoose edgepy or with edgeR via ``rpy2``, defaults to "python"
    :type flavor: str, optional
    :param dispersion: common or gene-wise dispersion, estimated if None.
        Only used with the "python" flavor, defaults to None
    :type dispersion: float | np.ndarray | None, optional
    :param offset: ``adata.layers`` key or array with the log-mean offset.
        If None, log of upper-quartile scaled library sizes is used, defaults to None
    :type offset: str | np.ndarray | None, optional
    :param layer: ``adata.layers[layer]`` holds counts, ``adata.X`` if None, defaults to None
    :type layer: str | None, optional
    :param key_added: layer where residuals will be saved, defaults to "deviance_residuals"
    :type key_added: str, optional
    :param verbose: if to print logs of steps of the fit, defaults to False
    :type verbose: bool, optional
    :param glm_kwargs: will be forwarded to edgepy glmFit (e.g. ``prior_count``)
    """
    counts = _get_counts(adata, layer)
    X = _design_matrix(adata, design)

    offset_key = offset if isinstance(offset, str) else None
    if offset_key is not None:
        offset = np.asarray(adata.layers[offset_key], dtype=np.float64)
    if offset is not None:
        offset = _broadcast_offset(offset, *counts.shape)

    if flavor == "python":
        if verbose:
            print("First-pass GLM fit with edgepy is performing.")
        residuals, dispersion = _glm_residuals_python(
            counts,
            X.to_numpy(),
            offset=offset,
            dispersion=dispersion,
            **glm_kwargs,
        )
    elif flavor == "R":
        if verbose:
            print("First-pass GLM fit with edgeR is performing.")
        residuals, dispersion = _glm_residuals_R(
            counts,
            X.to_numpy(),
            offset=offset,
            verbose=verbose,
        )
    else:
        raise ValueError("`flavor` argument should be `python` or `R`.")

    adata.layers[key_added] = residuals
    adata.uns[key_added] = {
        "design": list(X.columns),
        "flavor": flavor,
        "dispersion": dispersion,
        "offset": offset_key,
        "counts_layer": layer,
    }
