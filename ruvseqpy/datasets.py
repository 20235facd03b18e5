from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd

from scanpy import read_csv, AnnData


def simulate_counts(
    n_samples_per_group: int = 3,
    n_groups: int = 2,
    n_batches: int = 2,
    n_genes: int = 1000,
    n_spike_ins: int = 50,
    de_fraction: float = 0.1,
    log_fc: float = 1.5,
    factor_sd: float = 0.8,
    dispersion: float = 0.05,
    random_seed: int = 0,
) -> AnnData:
    """
    Negative binomial counts with a known covariate of interest and a known factor
    of unwanted variation. Every (group, batch) combination gets ``n_samples_per_group`` samples.

    The log mean of gene j in sample i is
    ``base_j + beta_j * group_i + alpha_j * unwanted_i + log(lib_i)``,
    where ``beta_j`` is non-zero for a ``de_fraction`` of the genes only and is always zero
    for the ERCC-like spike-ins appended after the genes.

    Truth is saved to ``adata.obs["unwanted"]``, ``adata.var["de"]``,
    ``adata.var["log_fc"]`` and ``adata.var["spike_in"]``.
    """
    rng = np.random.default_rng(random_seed)

    n_per_group = n_samples_per_group * n_batches
    n = n_per_group * n_groups
    group = np.repeat(np.arange(n_groups), n_per_group)
    batch = np.tile(np.repeat(np.arange(n_batches), n_samples_per_group), n_groups)

    unwanted = np.linspace(-1, 1, n_batches)[batch] + rng.normal(0, 0.2, n)
    unwanted -= unwanted.mean()
    lib = rng.uniform(0.8, 1.2, n)

    J = n_genes + n_spike_ins
    base = rng.normal(5, 1, J)
    alpha = rng.normal(0, factor_sd, J)

    de = np.zeros(J, dtype=bool)
    de[rng.choice(n_genes, int(round(de_fraction * n_genes)), replace=False)] = True
    beta = np.where(de, rng.choice([-1.0, 1.0], J) * log_fc, 0.0)

    # [N, J]
    mu = np.exp(
        base[np.newaxis]
        + group[:, np.newaxis] * beta[np.newaxis]
        + unwanted[:, np.newaxis] * alpha[np.newaxis]
        + np.log(lib)[:, np.newaxis]
    )
    r = 1 / dispersion
    counts = rng.negative_binomial(r, r / (r + mu)).astype(np.float64)

    obs = pd.DataFrame(
        {
            "group": pd.Categorical([f"g{g + 1}" for g in group]),
            "batch": pd.Categorical([f"b{b + 1}" for b in batch]),
            "unwanted": unwanted,
        },
        index=[f"sample_{i + 1:02d}" for i in range(n)],
    )
    var = pd.DataFrame(
        {
            "de": de,
            "log_fc": beta / np.log(2),
            "spike_in": np.arange(J) >= n_genes,
        },
        index=[f"gene_{j + 1:05d}" for j in range(n_genes)]
        + [f"ERCC-{j + 1:05d}" for j in range(n_spike_ins)],
    )

    return AnnData(X=counts, obs=obs, var=var)


def read_counts(
    file_path: str | Path,
    delimiter: str | None = ",",
    spike_in_prefix: str | None = "ERCC",
) -> AnnData:
    """
    Reads a genes x samples count table (first column with gene names,
    header with sample names) to samples x genes adata.
    Genes starting with ``spike_in_prefix`` are flagged in ``adata.var["spike_in"]``.
    """
    adata = read_csv(file_path, delimiter=delimiter, first_column_names=True).T
    adata.X = np.asarray(adata.X, dtype=np.float64)
    if spike_in_prefix is not None:
        adata.var["spike_in"] = adata.var_names.str.startswith(spike_in_prefix)
    return adata
