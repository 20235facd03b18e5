# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import re

import numpy as np
import pandas as pd
import patsy

from anndata import AnnData
from inmoose.edgepy import estimateGLMCommonDisp, glmFit
from scipy.sparse import issparse

logger = logging.getLogger("ruvseqpy")

# same as R's sqrt(.Machine$double.eps), used for the whole number check
_WHOLE_NUMBER_TOL = 1.4901161193847656e-08


def _get_counts(adata: AnnData, layer: str | None = None) -> np.ndarray:
    X = adata.X if layer is None else adata.layers[layer]
    X = X.toarray() if issparse(X) else X
    return np.array(X, dtype=np.float64)


def _is_whole_number(x: np.ndarray) -> bool:
    return bool(np.all(np.abs(x - np.round(x)) < _WHOLE_NUMBER_TOL))


def _control_mask(
    adata: AnnData, control_genes: str | np.ndarray | list | None
) -> np.ndarray:
    """
    Resolves control genes to a boolean mask over ``adata.var_names``.

    Args:
        adata (AnnData): adata object
        control_genes (str | np.ndarray | list | None): name of a boolean column of adata.var,
            boolean mask, integer positions or gene names. None means all genes.

    Returns:
        np.ndarray: [J] boolean mask
    """
    if control_genes is None:
        return np.ones(adata.n_vars, dtype=bool)

    if isinstance(control_genes, str):
        if control_genes in adata.var:
            mask = np.asarray(adata.var[control_genes], dtype=bool)
        elif control_genes in adata.var_names:
            mask = np.asarray(adata.var_names == control_genes)
        else:
            raise KeyError(
                f"`{control_genes}` is neither a column of adata.var nor a gene in adata.var_names"
            )
    else:
        genes = np.asarray(control_genes)
        if genes.dtype == bool:
            if genes.shape[0] != adata.n_vars:
                raise ValueError(
                    f"Boolean `control_genes` mask has length {genes.shape[0]}, "
                    f"expected {adata.n_vars}"
                )
            mask = genes
        elif np.issubdtype(genes.dtype, np.integer):
            mask = np.zeros(adata.n_vars, dtype=bool)
            mask[genes] = True
        else:
            missing = ~pd.Index(genes).isin(adata.var_names)
            if missing.any():
                raise KeyError(
                    f"{missing.sum()} control genes are not in adata.var_names, "
                    f"e.g. {list(genes[missing][:5])}"
                )
            mask = np.asarray(adata.var_names.isin(genes))

    if not mask.any():
        raise ValueError("No control genes selected.")

    return mask


def _design_matrix(adata: AnnData, design) -> pd.DataFrame:
    """
    Builds [N, p] design of the covariates of interest from a patsy formula
    over adata.obs, or wraps an already built matrix.
    """
    if isinstance(design, str):
        return patsy.dmatrix(
            design, adata.obs, return_type="dataframe", NA_action="raise"
        )

    if isinstance(design, pd.DataFrame):
        X = design.astype(np.float64)
    else:
        X = np.asarray(design, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, np.newaxis]
        X = pd.DataFrame(
            X,
            index=adata.obs_names,
            columns=[f"x{i}" for i in range(X.shape[1])],
        )

    if X.shape[0] != adata.n_obs:
        raise ValueError(
            f"Design matrix has {X.shape[0]} rows, but adata has {adata.n_obs} samples"
        )
    return X


def _effective_k(d: np.ndarray, k: int, tolerance: float) -> int:
    above = np.flatnonzero(d > tolerance)
    if above.size == 0:
        raise ValueError(
            "All singular values are below `tolerance`, no factor can be estimated"
        )
    k_eff = min(k, int(above[-1]) + 1)
    if k_eff < k:
        logger.warning(
            "Only %i singular values are above tolerance %g, "
            "%i factors will be estimated instead of %i",
            k_eff,
            tolerance,
            k_eff,
            k,
        )
    return k_eff


def _ruv_g(
    Y: np.ndarray,
    ctl: np.ndarray,
    k: int,
    drop: int = 0,
    center: bool = True,
    tolerance: float = 1e-8,
) -> tuple[np.ndarray, np.ndarray]:
    # [N, J]
    Y_center = Y - Y.mean(axis=0, keepdims=True) if center else Y

    # [N, r], [r] of the control genes submatrix
    U, d, _ = np.linalg.svd(Y_center[:, ctl], full_matrices=False)
    k = _effective_k(d, k, tolerance)
    if drop >= k:
        raise ValueError(
            f"`drop` ({drop}) must be less than the number of estimable factors ({k})"
        )

    # [N, k - drop]
    W = U[:, drop:k]
    # [k - drop, J] = ([k, N] x [N, k])^-1 x [k, N] x [N, J]
    alpha = np.linalg.solve(W.T @ W, W.T @ Y)

    return W, alpha


def _ruv_s(
    Y: np.ndarray,
    ctl: np.ndarray,
    k: int,
    groups: np.ndarray,
    tolerance: float = 1e-8,
) -> tuple[np.ndarray, np.ndarray]:
    groups = np.asarray(groups, dtype=int)
    groups = groups[(groups >= 0).sum(axis=1) >= 2]
    if groups.shape[0] == 0:
        raise ValueError("No replicate group with at least two samples found")

    # deviations of every replicate from its group mean
    Y_ctls = []
    for row in groups:
        members = row[row >= 0]
        Y_ctls.append(Y[members] - Y[members].mean(axis=0, keepdims=True))
    # [N_reps, J]
    Y_ctls = np.concatenate(Y_ctls, axis=0)
    Y_ctls = Y_ctls[np.any(Y_ctls != 0, axis=1)]
    if Y_ctls.shape[0] == 0:
        raise ValueError("Replicate samples are identical, no unwanted variation to estimate")

    _, d, Vt = np.linalg.svd(Y_ctls, full_matrices=False)
    k = _effective_k(d, k, tolerance)

    # [k, J] = diag(d) x [k, J]
    a = d[:k, np.newaxis] * Vt[:k]
    a_ctl = a[:, ctl]

    # [N, k] = ([k, c] x [c, k])^-1 x [k, c] x [c, N]
    W = np.linalg.solve(a_ctl @ a_ctl.T, a_ctl @ Y[:, ctl].T).T

    return W, a


def _ruv_r(
    Y: np.ndarray,
    residuals: np.ndarray,
    ctl: np.ndarray,
    k: int,
    center: bool = True,
    tolerance: float = 1e-8,
) -> tuple[np.ndarray, np.ndarray]:
    # [N, J]
    E = residuals - residuals.mean(axis=0, keepdims=True) if center else residuals

    U, d, _ = np.linalg.svd(E[:, ctl], full_matrices=False)
    k = _effective_k(d, k, tolerance)

    W = U[:, :k]
    alpha = np.linalg.solve(W.T @ W, W.T @ Y)

    return W, alpha


def _restore_counts(
    Y_corr: np.ndarray,
    counts: np.ndarray,
    epsilon: float,
    round: bool,  # pylint: disable=W0622
    is_log: bool,
) -> np.ndarray:
    if is_log or not _is_whole_number(counts):
        return Y_corr

    restored = np.exp(Y_corr) - epsilon
    if round:
        restored = np.round(restored)
        restored[restored < 0] = 0
    return restored


def _store_factors(
    adata: AnnData,
    W: np.ndarray,
    normalized: np.ndarray,
    key_added: str,
    params: dict,
    inplace: bool,
) -> dict | None:
    factor_names = [f"W_{i + 1}" for i in range(W.shape[1])]

    if not inplace:
        return {
            "W": pd.DataFrame(W, index=adata.obs_names, columns=factor_names),
            "normalized": normalized,
        }

    adata.obsm[key_added] = W
    stale = [
        c for c in adata.obs.columns if re.fullmatch(rf"{re.escape(key_added)}_W_\d+", str(c))
    ]
    adata.obs.drop(columns=stale, inplace=True)
    for i, name in enumerate(factor_names):
        adata.obs[f"{key_added}_{name}"] = W[:, i]
    adata.layers[f"{key_added}_normalized"] = normalized
    adata.uns[key_added] = {
        **params,
        "k": W.shape[1],
        "factors": factor_names,
        "normalized_layer": f"{key_added}_normalized",
    }
    return None


def _upper_quartile_factors(
    counts: np.ndarray, p: float = 0.75
) -> tuple[np.ndarray, np.ndarray]:
    """
    edgeR "upperquartile" normalization factors.

    Returns:
        tuple[np.ndarray, np.ndarray]: [N] library sizes and [N] normalization factors
            scaled to have geometric mean 1
    """
    lib_size = counts.sum(axis=1)
    expressed = counts.sum(axis=0) > 0

    # [N, J'] / [N, 1]
    f = np.quantile(counts[:, expressed] / lib_size[:, np.newaxis], p, axis=1)
    if np.any(f == 0):
        raise ValueError(
            f"One or more {p}-quantiles are zero, upper-quartile normalization is not possible"
        )
    f = f / np.exp(np.mean(np.log(f)))

    return lib_size, f


def _default_offset(counts: np.ndarray) -> np.ndarray:
    lib_size, norm_factors = _upper_quartile_factors(counts)
    # [N]
    return np.log(lib_size * norm_factors)


def _broadcast_offset(offset, n: int, J: int) -> np.ndarray:
    if offset is None:
        return np.zeros((n, J))
    offset = np.asarray(offset, dtype=np.float64)
    if offset.ndim == 1:
        offset = offset[:, np.newaxis]
    return np.broadcast_to(offset, (n, J))


def _nb_unit_deviance(
    y: np.ndarray, mu: np.ndarray, dispersion: float | np.ndarray
) -> np.ndarray:
    # dispersion is scalar or [J], y and mu are [N, J]
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), y.shape)
    with np.errstate(divide="ignore", invalid="ignore"):
        ylogy = np.where(y > 0, y * np.log(y / mu), 0.0)
        poisson = 2 * (ylogy - (y - mu))
        nb = 2 * (ylogy - (y + 1 / phi) * (np.log1p(phi * y) - np.log1p(phi * mu)))
    dev = np.where(phi > 1e-8, nb, poisson)
    return np.maximum(dev, 0.0)


def _deviance_residuals(
    counts: np.ndarray, mu: np.ndarray, dispersion: float | np.ndarray
) -> np.ndarray:
    dev = _nb_unit_deviance(counts, mu, dispersion)
    return np.sign(counts - mu) * np.sqrt(dev)


def _edgepy_fit(
    counts: np.ndarray,
    design: np.ndarray,
    offset=None,
    dispersion: float | np.ndarray | None = None,
    **glm_kwargs,
):
    """
    Negative binomial GLM of every gene with edgepy.

    Args:
        counts (np.ndarray): [N, J] counts
        design (np.ndarray): [N, p] design matrix
        offset (np.ndarray | None, optional): [N] or [N, J] log-mean offset,
            log of upper-quartile scaled library sizes if None. Defaults to None.
        dispersion (float | np.ndarray | None, optional): common or [J] gene-wise dispersion,
            common Cox-Reid dispersion is estimated if None. Defaults to None.
        glm_kwargs: will be forwarded to edgepy glmFit (e.g. ``prior_count``).

    Returns:
        tuple[DGEGLM, float | np.ndarray]: edgepy fit object and dispersion used
    """
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise ValueError("Design matrix is not of full column rank")
    if offset is None:
        offset = _default_offset(counts)

    # edgepy works on genes x samples
    y = np.ascontiguousarray(counts.T)
    off = np.ascontiguousarray(_broadcast_offset(offset, *counts.shape).T)
    design = np.ascontiguousarray(design, dtype=np.float64)

    if dispersion is None:
        # genes without counts carry no information on dispersion
        expressed = y.sum(axis=1) > 0
        dispersion = float(
            estimateGLMCommonDisp(
                y[expressed], design=design, offset=off[expressed]
            )
        )
        logger.info("Estimated common dispersion: %.4f", dispersion)

    fit = glmFit(y, design=design, dispersion=dispersion, offset=off, **glm_kwargs)

    failed = getattr(fit, "failed", None)
    if failed is not None and np.any(failed):
        logger.warning(
            "GLM fit didn't converge for %i out of %i genes",
            np.sum(failed),
            y.shape[0],
        )

    return fit, dispersion


def _glm_residuals_python(
    counts: np.ndarray,
    design: np.ndarray,
    offset=None,
    dispersion: float | np.ndarray | None = None,
    **glm_kwargs,
) -> tuple[np.ndarray, float | np.ndarray]:
    fit, dispersion = _edgepy_fit(counts, design, offset, dispersion, **glm_kwargs)
    # [N, J] = [J, N].T
    mu = np.asarray(fit.fitted_values, dtype=np.float64).T
    return _deviance_residuals(counts, mu, dispersion), dispersion


def _glm_residuals_R(
    counts: np.ndarray,
    design: np.ndarray,
    offset=None,
    verbose: bool = False,
) -> tuple[np.ndarray, float]:
    """
    First-pass edgeR fit through rpy2:
    DGEList -> calcNormFactors -> estimateGLMCommonDisp -> estimateGLMTagwiseDisp
    -> glmFit -> deviance residuals.
    """

    import shutil

    if not shutil.which("R"):
        raise Exception("R installation is necessary.")
    try:
        from rpy2.robjects.packages import importr
    except ImportError as e:
        raise ImportError("\nPlease install rpy2:\n\n\tpip install rpy2") from e
    try:
        edger = importr("edgeR")
    except Exception as e:
        raise Exception(
            'R package "edgeR" is necessary.\n'
            "Please install it from https://bioconductor.org/packages/edgeR and try again"
        ) from e

    from rpy2.robjects import numpy2ri, default_converter
    from rpy2.robjects.conversion import localconverter
    import rpy2.rinterface_lib.callbacks

    rpy2.rinterface_lib.callbacks.consolewrite_warnerror = lambda x: logger.warning(
        x.rstrip()
    )

    base = importr("base")
    stats = importr("stats")
    dollar = base.__dict__["$"]
    dollar_assign = base.__dict__["$<-"]

    with localconverter(default_converter + numpy2ri.converter) as cv:
        # edgeR expects genes x samples
        r_counts = cv.py2rpy(np.ascontiguousarray(counts.T))
        r_design = cv.py2rpy(np.ascontiguousarray(design))
        r_offset = (
            None
            if offset is None
            else cv.py2rpy(np.ascontiguousarray(_broadcast_offset(offset, *counts.shape).T))
        )

    y = edger.DGEList(counts=r_counts)
    if r_offset is None:
        y = edger.calcNormFactors(y, method="upperquartile")
    else:
        y = dollar_assign(y, "offset", r_offset)

    y = edger.estimateGLMCommonDisp(y, r_design, verbose=verbose)
    y = edger.estimateGLMTagwiseDisp(y, r_design)
    fit = edger.glmFit(y, r_design)
    res = stats.residuals(fit, type="deviance")
    common_dispersion = dollar(y, "common.dispersion")

    with localconverter(default_converter + numpy2ri.converter) as cv:
        res = np.asarray(cv.rpy2py(res), dtype=np.float64)
        common_dispersion = float(np.asarray(cv.rpy2py(common_dispersion))[0])

    return res.T, common_dispersion
