# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from inmoose.edgepy import glmLRT
from scipy import stats
from sklearn.decomposition import PCA

from ._utils import (
    _control_mask,
    _design_matrix,
    _edgepy_fit,
    _get_counts,
    _restore_counts,
    _ruv_g,
    _ruv_r,
    _ruv_s,
    _store_factors,
    _upper_quartile_factors,
)


logger = logging.getLogger("ruvseqpy")


def make_groups(labels: Sequence) -> np.ndarray:
    """
    Builds the replicate matrix used by :func:`ruv_s` from sample labels.

    Args:
        labels (Sequence): [N] label of every sample, samples with the same label
            are considered replicates.

    Returns:
        np.ndarray: [n_groups, max_group_size] 0-based sample indices,
            one row per label (sorted), padded with -1.
    """
    labels = pd.Categorical(labels)
    codes = np.asarray(labels.codes)
    n_groups = len(labels.categories)

    sizes = np.bincount(codes[codes >= 0], minlength=n_groups)
    groups = np.full((n_groups, sizes.max()), -1, dtype=int)
    for i in range(n_groups):
        idx = np.flatnonzero(codes == i)
        groups[i, : len(idx)] = idx

    return groups


def ruv_g(
    adata: AnnData,
    control_genes: str | np.ndarray | list,
    k: int,
    drop: int = 0,
    center: bool = True,
    round: bool = True,  # pylint: disable=W0622
    epsilon: float = 1,
    tolerance: float = 1e-8,
    is_log: bool = False,
    layer: str | None = None,
    key_added: str = "RUVg",
    inplace: bool = True,
) -> dict | None:
    """
    Remove unwanted variation using negative control genes.
    Factors are the leading left singular vectors of the centered log counts
    of control genes, which are assumed not to be affected by the covariates of interest.

    Saves factors to ``adata.obsm[key_added]`` and ``adata.obs[key_added + "_W_i"]``,
    corrected counts to ``adata.layers[key_added + "_normalized"]``
    and used parameters to ``adata.uns[key_added]``.

    Args:
        adata (AnnData): samples x genes adata object with counts.
        control_genes (str | np.ndarray | list): adata.var column with boolean control flags,
            boolean mask, positions or names of control genes (e.g. ERCC spike-ins).
        k (int): number of factors of unwanted variation to estimate.
        drop (int, optional): number of leading singular vectors to drop,
            useful when the first factor is associated with the covariate of interest. Defaults to 0.
        center (bool, optional): if to center genes before the SVD. Defaults to True.
        round (bool, optional): if to round normalized counts. Defaults to True.
        epsilon (float, optional): pseudo-count added before the log transform. Defaults to 1.
        tolerance (float, optional): singular values below it are treated as zero. Defaults to 1e-8.
        is_log (bool, optional): if counts are already log-transformed. Defaults to False.
        layer (str | None, optional): adata.layers[layer] holds counts, adata.X if None. Defaults to None.
        key_added (str, optional): where to save the results. Defaults to "RUVg".
        inplace (bool, optional): if to write to adata or return the results. Defaults to True.

    Returns:
        if inplace is False, dict with "W" [N, k] factors DataFrame
        and "normalized" [N, J] corrected counts
    """
    if k < 1:
        raise ValueError("`k` must be a positive integer")
    if drop >= k:
        raise ValueError("`drop` must be less than `k`")

    counts = _get_counts(adata, layer)
    ctl = _control_mask(adata, control_genes)

    # [N, J]
    Y = counts if is_log else np.log(counts + epsilon)

    W, alpha = _ruv_g(Y, ctl, k, drop=drop, center=center, tolerance=tolerance)
    normalized = _restore_counts(Y - W @ alpha, counts, epsilon, round, is_log)

    return _store_factors(
        adata,
        W,
        normalized,
        key_added,
        params={
            "method": "RUVg",
            "n_control_genes": int(ctl.sum()),
            "drop": drop,
            "center": center,
            "epsilon": epsilon,
            "is_log": is_log,
        },
        inplace=inplace,
    )


def ruv_s(
    adata: AnnData,
    control_genes: str | np.ndarray | list | None,
    k: int,
    groups: str | Sequence | np.ndarray,
    round: bool = True,  # pylint: disable=W0622
    epsilon: float = 1,
    tolerance: float = 1e-8,
    is_log: bool = False,
    layer: str | None = None,
    key_added: str = "RUVs",
    inplace: bool = True,
) -> dict | None:
    """
    Remove unwanted variation using replicate samples.
    Within-group deviations of replicate samples, for which the covariates of interest
    are constant, estimate the gene loadings of the unwanted factors, and factors
    themselves are obtained by regressing control genes on these loadings.

    Args:
        adata (AnnData): samples x genes adata object with counts.
        control_genes (str | np.ndarray | list | None): control genes as in :func:`ruv_g`,
            None to use all genes.
        k (int): number of factors of unwanted variation to estimate.
        groups (str | Sequence | np.ndarray): adata.obs column or [N] labels of replicate groups,
            or replicate matrix as returned by :func:`make_groups`.
        round (bool, optional): if to round normalized counts. Defaults to True.
        epsilon (float, optional): pseudo-count added before the log transform. Defaults to 1.
        tolerance (float, optional): singular values below it are treated as zero. Defaults to 1e-8.
        is_log (bool, optional): if counts are already log-transformed. Defaults to False.
        layer (str | None, optional): adata.layers[layer] holds counts, adata.X if None. Defaults to None.
        key_added (str, optional): where to save the results. Defaults to "RUVs".
        inplace (bool, optional): if to write to adata or return the results. Defaults to True.

    Returns:
        if inplace is False, dict with "W" and "normalized" as in :func:`ruv_g`
    """
    if k < 1:
        raise ValueError("`k` must be a positive integer")

    groups_key = groups if isinstance(groups, str) else None
    if groups_key is not None:
        assert (
            groups_key in adata.obs
        ), f"Column `{groups_key}` not found in adata.obs. Set `groups` parameter properly"
        groups = make_groups(adata.obs[groups_key])
    else:
        groups = np.asarray(groups)
        if groups.ndim == 1:
            if groups.shape[0] != adata.n_obs:
                raise ValueError(
                    f"Got {groups.shape[0]} group labels for {adata.n_obs} samples"
                )
            groups = make_groups(groups)

    singletons = ((groups >= 0).sum(axis=1) < 2).sum()
    if singletons:
        warnings.warn(
            f"{singletons} replicate groups with less than two samples are ignored"
        )

    counts = _get_counts(adata, layer)
    ctl = _control_mask(adata, control_genes)
    Y = counts if is_log else np.log(counts + epsilon)

    W, a = _ruv_s(Y, ctl, k, groups, tolerance=tolerance)
    normalized = _restore_counts(Y - W @ a, counts, epsilon, round, is_log)

    return _store_factors(
        adata,
        W,
        normalized,
        key_added,
        params={
            "method": "RUVs",
            "n_control_genes": int(ctl.sum()),
            "groups": groups_key if groups_key is not None else groups,
            "epsilon": epsilon,
            "is_log": is_log,
        },
        inplace=inplace,
    )


def ruv_r(
    adata: AnnData,
    control_genes: str | np.ndarray | list | None,
    k: int,
    residuals: str | np.ndarray = "deviance_residuals",
    center: bool = True,
    round: bool = True,  # pylint: disable=W0622
    epsilon: float = 1,
    tolerance: float = 1e-8,
    is_log: bool = False,
    layer: str | None = None,
    key_added: str = "RUVr",
    inplace: bool = True,
) -> dict | None:
    """
    Remove unwanted variation using residuals of a first-pass GLM of counts
    on the covariates of interest (see :func:`ruvseqpy.pp.glm_residuals`).

    Args:
        adata (AnnData): samples x genes adata object with counts.
        control_genes (str | np.ndarray | list | None): genes whose residuals are decomposed,
            None to use all genes.
        k (int): number of factors of unwanted variation to estimate.
        residuals (str | np.ndarray, optional): adata.layers key or [N, J] matrix of residuals.
            Defaults to "deviance_residuals".
        center (bool, optional): if to center residuals of every gene before the SVD. Defaults to True.
        round (bool, optional): if to round normalized counts. Defaults to True.
        epsilon (float, optional): pseudo-count added before the log transform. Defaults to 1.
        tolerance (float, optional): singular values below it are treated as zero. Defaults to 1e-8.
        is_log (bool, optional): if counts are already log-transformed. Defaults to False.
        layer (str | None, optional): adata.layers[layer] holds counts, adata.X if None. Defaults to None.
        key_added (str, optional): where to save the results. Defaults to "RUVr".
        inplace (bool, optional): if to write to adata or return the results. Defaults to True.

    Returns:
        if inplace is False, dict with "W" and "normalized" as in :func:`ruv_g`
    """
    if k < 1:
        raise ValueError("`k` must be a positive integer")

    residuals_key = residuals if isinstance(residuals, str) else None
    if residuals_key is not None:
        assert residuals_key in adata.layers, (
            f"Residuals `{residuals_key}` not found in adata.layers. "
            "First, run ruvseqpy.pp.glm_residuals."
        )
        residuals = adata.layers[residuals_key]
    residuals = np.asarray(residuals, dtype=np.float64)
    if residuals.shape != adata.shape:
        raise ValueError(
            f"Residuals have shape {residuals.shape}, expected {adata.shape} (samples x genes)"
        )

    counts = _get_counts(adata, layer)
    ctl = _control_mask(adata, control_genes)
    Y = counts if is_log else np.log(counts + epsilon)

    W, alpha = _ruv_r(Y, residuals, ctl, k, center=center, tolerance=tolerance)
    normalized = _restore_counts(Y - W @ alpha, counts, epsilon, round, is_log)

    return _store_factors(
        adata,
        W,
        normalized,
        key_added,
        params={
            "method": "RUVr",
            "n_control_genes": int(ctl.sum()),
            "residuals": residuals_key,
            "center": center,
            "epsilon": epsilon,
            "is_log": is_log,
        },
        inplace=inplace,
    )


def glm_lrt(
    adata: AnnData,
    design: str | np.ndarray | pd.DataFrame,
    factors: str | None = None,
    coef: str | int | list | None = None,
    dispersion: float | np.ndarray | None = None,
    offset: str | np.ndarray | None = None,
    layer: str | None = None,
    key_added: str | None = "glm_lrt",
    **glm_kwargs,
) -> pd.DataFrame:
    """
    Differential expression test: negative binomial GLM of raw counts on the covariates
    of interest together with previously estimated factors of unwanted variation,
    and likelihood ratio test for the ``coef`` covariates.
    Factors are taken as they are from ``adata.obsm[factors]`` and are never re-estimated here.

    Args:
        adata (AnnData): samples x genes adata object with raw counts.
        design (str | np.ndarray | pd.DataFrame): patsy formula over adata.obs (e.g. "~ group")
            or [N, p] design matrix of the covariates of interest.
        factors (str | None, optional): adata.obsm key of the unwanted factors,
            e.g. "RUVg". Defaults to None (no factors).
        coef (str | int | list | None, optional): names or positions of design columns to test.
            Defaults to None (the last column of the design).
        dispersion (float | np.ndarray | None, optional): common or gene-wise dispersion,
            common dispersion is estimated under the full model if None. Defaults to None.
        offset (str | np.ndarray | None, optional): adata.layers key or array with the log-mean offset.
            If None, log of upper-quartile scaled library sizes is used. Defaults to None.
        layer (str | None, optional): adata.layers[layer] holds counts, adata.X if None. Defaults to None.
        key_added (str | None, optional): if not None, results are saved to adata.uns[key_added].
            Defaults to "glm_lrt".
        glm_kwargs: will be forwarded to edgepy glmFit (e.g. ``prior_count``).

    Returns:
        pd.DataFrame: per gene logFC, logCPM, LR, PValue and FDR
    """
    normalized_layers = {
        value.get("normalized_layer")
        for value in adata.uns.values()
        if isinstance(value, dict)
    }
    if layer is not None and layer in normalized_layers:
        logger.warning(
            "Layer '%s' holds normalized counts, the test should be run on raw counts "
            "with unwanted factors as covariates",
            layer,
        )

    counts = _get_counts(adata, layer)
    X = _design_matrix(adata, design)

    if coef is None:
        coef = [X.columns[-1]]
    elif isinstance(coef, (str, int, np.integer)):
        coef = [coef]
    coef = [X.columns[c] if isinstance(c, (int, np.integer)) else c for c in coef]
    missing = [c for c in coef if c not in X.columns]
    if missing:
        raise KeyError(f"Coefficients {missing} not found in design columns {list(X.columns)}")

    full = X
    if factors is not None:
        assert factors in adata.obsm, (
            f"Factors `{factors}` not found in adata.obsm. "
            "First, run ruvseqpy.tl.ruv_g, ruv_s or ruv_r."
        )
        W = np.asarray(adata.obsm[factors], dtype=np.float64)
        W = pd.DataFrame(
            W,
            index=X.index,
            columns=[f"{factors}_W_{i + 1}" for i in range(W.shape[1])],
        )
        full = pd.concat([X, W], axis=1)

    if isinstance(offset, str):
        offset = np.asarray(adata.layers[offset], dtype=np.float64)

    fit, dispersion = _edgepy_fit(
        counts, full.to_numpy(), offset, dispersion, **glm_kwargs
    )

    coef_idx = [full.columns.get_loc(c) for c in coef]
    lrt = glmLRT(fit, coef=coef_idx)

    # [J]
    LR = np.maximum(np.asarray(lrt.table["LR"], dtype=np.float64), 0)
    p_values = np.asarray(lrt.table["PValue"], dtype=np.float64)
    # genes without counts carry no evidence
    empty = counts.sum(axis=0) == 0
    LR[empty] = 0
    p_values[empty] = 1

    # [len(coef), J] natural log to log2
    log_fc = np.asarray(fit.coefficients, dtype=np.float64).T[coef_idx] / np.log(2)

    lib_size, norm_factors = _upper_quartile_factors(counts)
    eff_lib_size = lib_size * norm_factors
    log_cpm = np.log2(
        ((counts + 0.5) / (eff_lib_size[:, np.newaxis] + 1) * 1e6).mean(axis=0)
    )

    results = pd.DataFrame(index=adata.var_names)
    if len(coef) == 1:
        results["logFC"] = log_fc[0]
    else:
        for name, fc in zip(coef, log_fc):
            results[f"logFC.{name}"] = fc
    results["logCPM"] = log_cpm
    results["LR"] = LR
    results["PValue"] = p_values
    results["FDR"] = stats.false_discovery_control(p_values, method="bh")

    if key_added is not None:
        adata.uns[key_added] = {
            "table": results,
            "coef": list(coef),
            "design": list(full.columns),
            "factors": factors,
            "dispersion": dispersion,
        }

    return results


def empirical_control_genes(
    adata: AnnData,
    results: str | pd.DataFrame = "glm_lrt",
    n_de: int = 5000,
    key_added: str = "empirical_control",
) -> np.ndarray:
    """
    Empirical negative control genes: all genes except the ``n_de`` most
    differentially expressed ones of a first-pass test (see :func:`glm_lrt`).
    Saves a boolean flag to ``adata.var[key_added]``, which can be used
    as ``control_genes`` in :func:`ruv_g`.

    Args:
        adata (AnnData): adata object.
        results (str | pd.DataFrame, optional): adata.uns key of :func:`glm_lrt` results
            or the results table itself. Defaults to "glm_lrt".
        n_de (int, optional): number of top ranked genes excluded from controls. Defaults to 5000.
        key_added (str, optional): adata.var column to save the flags to. Defaults to "empirical_control".

    Returns:
        np.ndarray: [J] boolean mask of control genes
    """
    if isinstance(results, str):
        assert (
            results in adata.uns
        ), f"Results `{results}` not found in adata.uns. First, run ruvseqpy.tl.glm_lrt."
        results = adata.uns[results]["table"]

    if n_de >= adata.n_vars:
        raise ValueError(
            f"`n_de` ({n_de}) must be less than the number of genes ({adata.n_vars})"
        )

    p_values = results["PValue"].reindex(adata.var_names)
    missing = p_values.isna()
    if missing.any():
        logger.warning(
            "%i out of %i genes have no p-value in the results table "
            "and are ranked last, i.e. taken as control genes. "
            "Rerun ruvseqpy.tl.glm_lrt after filtering genes",
            missing.sum(),
            adata.n_vars,
        )
    rank = p_values.rank(method="first", na_option="bottom")
    controls = np.asarray(rank > n_de)

    adata.var[key_added] = controls
    return controls


def rle(
    adata: AnnData,
    layer: str | None = None,
    key_added: str = "rle",
) -> None:
    """
    Relative log expression: log(counts + 1) of every gene minus its median over samples.
    Saves the matrix to ``adata.layers[key_added]`` and per sample median and
    interquartile range to ``adata.obs[key_added + "_median"]``, ``adata.obs[key_added + "_iqr"]``.
    Well normalized samples have RLE distributions centered at zero with similar spread.
    """
    log_counts = np.log(_get_counts(adata, layer) + 1)
    # [N, J] - [1, J]
    rle_ = log_counts - np.median(log_counts, axis=0, keepdims=True)

    q25, q50, q75 = np.quantile(rle_, [0.25, 0.5, 0.75], axis=1)
    adata.layers[key_added] = rle_
    adata.obs[f"{key_added}_median"] = q50
    adata.obs[f"{key_added}_iqr"] = q75 - q25


def pca(
    adata: AnnData,
    layer: str | None = None,
    n_comps: int = 2,
    key_added: str = "X_pca_counts",
    random_state: int = 0,
) -> None:
    """
    PCA of gene-centered log(counts + 1), e.g. to compare samples before
    and after removing unwanted variation (``layer="RUVg_normalized"``).
    Saves coordinates to ``adata.obsm[key_added]`` and explained variance ratio
    to ``adata.uns[key_added]``.
    """
    log_counts = np.log(_get_counts(adata, layer) + 1)

    model = PCA(n_components=n_comps, svd_solver="full", random_state=random_state)
    adata.obsm[key_added] = model.fit_transform(log_counts)
    adata.uns[key_added] = {
        "variance_ratio": model.explained_variance_ratio_,
        "layer": layer,
    }
