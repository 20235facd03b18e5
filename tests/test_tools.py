import logging

import numpy as np
import pytest
from anndata import AnnData

import ruvseqpy as rsp


class TestTools:
    random_seed = 3
    spike_ins = "spike_in"
    group_key = "group"

    def simulated(self):
        return rsp.datasets.simulate_counts(random_seed=self.random_seed)

    @staticmethod
    def abs_corr(f, s):
        return abs(np.corrcoef(np.asarray(f), np.asarray(s))[0, 1])

    def assert_ruv_slots(self, adata, key, k):
        assert key in adata.obsm
        assert adata.obsm[key].shape == (adata.n_obs, k)
        for i in range(k):
            assert f"{key}_W_{i + 1}" in adata.obs
        assert f"{key}_normalized" in adata.layers
        assert adata.uns[key]["k"] == k
        assert adata.uns[key]["normalized_layer"] == f"{key}_normalized"

    def test_make_groups(self):
        groups = rsp.tl.make_groups(["b", "a", "b", "c", "a", "b"])

        assert np.array_equal(
            groups,
            np.array(
                [
                    [1, 4, -1],
                    [0, 2, 5],
                    [3, -1, -1],
                ]
            ),
        )

    def test_ruv_g(self):
        adata = self.simulated()
        counts = adata.X.copy()
        rsp.tl.ruv_g(adata, self.spike_ins, k=1)

        self.assert_ruv_slots(adata, "RUVg", 1)
        assert self.abs_corr(adata.obsm["RUVg"][:, 0], adata.obs["unwanted"]) > 0.9

        normalized = adata.layers["RUVg_normalized"]
        assert (normalized >= 0).all()
        assert np.array_equal(normalized, np.round(normalized))
        assert np.array_equal(adata.X, counts)

    def test_ruv_g_projection(self):
        adata = self.simulated()
        adata.layers["log"] = np.log(adata.X + 1)
        res = rsp.tl.ruv_g(
            adata, self.spike_ins, k=2, is_log=True, layer="log", inplace=False
        )

        W = res["W"].to_numpy()
        assert list(res["W"].columns) == ["W_1", "W_2"]
        assert np.allclose(W.T @ W, np.eye(2))
        assert np.allclose(W.T @ res["normalized"], 0, atol=1e-8)
        assert "RUVg" not in adata.obsm

    def test_ruv_g_drop(self):
        adata = self.simulated()
        res = rsp.tl.ruv_g(adata, self.spike_ins, k=2, inplace=False)
        res_drop = rsp.tl.ruv_g(adata, self.spike_ins, k=2, drop=1, inplace=False)

        assert res_drop["W"].shape == (adata.n_obs, 1)
        assert np.allclose(res_drop["W"]["W_1"], res["W"]["W_2"])

        with pytest.raises(ValueError):
            rsp.tl.ruv_g(adata, self.spike_ins, k=1, drop=1)

    def test_ruv_g_k_limited_by_controls(self):
        adata = self.simulated()
        controls = list(adata.var_names[adata.var[self.spike_ins]][:3])
        rsp.tl.ruv_g(adata, controls, k=5)

        self.assert_ruv_slots(adata, "RUVg", 3)

    def test_ruv_g_controls(self):
        adata = self.simulated()

        with pytest.raises(ValueError):
            rsp.tl.ruv_g(adata, np.zeros(adata.n_vars, dtype=bool), k=1)
        with pytest.raises(KeyError):
            rsp.tl.ruv_g(adata, ["not_a_gene"], k=1)
        with pytest.raises(KeyError):
            rsp.tl.ruv_g(adata, "not_a_column", k=1)
        with pytest.raises(ValueError):
            rsp.tl.ruv_g(adata, self.spike_ins, k=0)

    def test_ruv_g_single_control_gene(self):
        adata = self.simulated()
        gene = adata.var_names[adata.var[self.spike_ins]][0]
        assert gene not in adata.var

        rsp.tl.ruv_g(adata, gene, k=1)

        self.assert_ruv_slots(adata, "RUVg", 1)
        assert adata.uns["RUVg"]["n_control_genes"] == 1

    def test_ruv_g_rerun_with_fewer_factors(self):
        adata = self.simulated()
        rsp.tl.ruv_g(adata, self.spike_ins, k=2)
        assert "RUVg_W_2" in adata.obs

        rsp.tl.ruv_g(adata, self.spike_ins, k=1)

        self.assert_ruv_slots(adata, "RUVg", 1)
        assert "RUVg_W_2" not in adata.obs
        assert "unwanted" in adata.obs

    def test_ruv_g_not_whole_counts_stay_on_log_scale(self):
        adata = self.simulated()
        adata.layers["shifted"] = adata.X + 0.5
        res = rsp.tl.ruv_g(
            adata, self.spike_ins, k=1, layer="shifted", inplace=False
        )

        Y = np.log(adata.layers["shifted"] + 1)
        W = res["W"].to_numpy()
        assert np.allclose(res["normalized"], Y - W @ W.T @ Y)
        assert not np.array_equal(res["normalized"], np.round(res["normalized"]))

    def test_ruv_g_no_rounding(self):
        adata = self.simulated()
        adata.layers["log"] = np.log(adata.X + 1)
        res = rsp.tl.ruv_g(adata, self.spike_ins, k=1, round=False, inplace=False)
        res_log = rsp.tl.ruv_g(
            adata, self.spike_ins, k=1, is_log=True, layer="log", inplace=False
        )

        assert np.allclose(res["W"], res_log["W"])
        assert np.allclose(res["normalized"], np.exp(res_log["normalized"]) - 1)
        assert not np.array_equal(res["normalized"], np.round(res["normalized"]))

    def test_ruv_g_uncentered(self):
        adata = self.simulated()
        res = rsp.tl.ruv_g(adata, self.spike_ins, k=1, inplace=False)
        res_raw = rsp.tl.ruv_g(
            adata, self.spike_ins, k=1, center=False, inplace=False
        )

        W = res_raw["W"].to_numpy()
        assert np.allclose(W.T @ W, np.eye(1))
        assert not np.allclose(np.abs(W), np.abs(res["W"].to_numpy()))

        rsp.tl.ruv_g(adata, self.spike_ins, k=1, center=False)
        assert adata.uns["RUVg"]["center"] is False

    def test_ruv_s(self):
        adata = self.simulated()
        rsp.tl.ruv_s(adata, None, k=1, groups=self.group_key)

        self.assert_ruv_slots(adata, "RUVs", 1)
        assert self.abs_corr(adata.obsm["RUVs"][:, 0], adata.obs["unwanted"]) > 0.9

    def test_ruv_s_groups_input(self):
        adata = self.simulated()
        labels = adata.obs[self.group_key]

        from_key = rsp.tl.ruv_s(adata, None, k=1, groups=self.group_key, inplace=False)
        from_labels = rsp.tl.ruv_s(
            adata, None, k=1, groups=np.asarray(labels), inplace=False
        )
        from_matrix = rsp.tl.ruv_s(
            adata, None, k=1, groups=rsp.tl.make_groups(labels), inplace=False
        )

        assert np.allclose(from_key["W"], from_labels["W"])
        assert np.allclose(from_key["W"], from_matrix["W"])

    def test_ruv_s_singleton_groups(self):
        adata = self.simulated()
        labels = np.asarray(adata.obs[self.group_key]).astype(object)
        labels[0] = "alone"

        with pytest.warns(UserWarning):
            rsp.tl.ruv_s(adata, None, k=1, groups=labels)

        with pytest.raises(ValueError):
            rsp.tl.ruv_s(adata, None, k=1, groups=np.arange(adata.n_obs))

    def test_ruv_s_factors_from_control_genes(self):
        adata = self.simulated()
        adata.layers["log"] = np.log(adata.X + 1)
        res = rsp.tl.ruv_s(
            adata,
            self.spike_ins,
            k=1,
            groups=self.group_key,
            is_log=True,
            layer="log",
            inplace=False,
        )

        Y = adata.layers["log"]
        ctl = adata.var[self.spike_ins].to_numpy()
        deviations = []
        for row in rsp.tl.make_groups(adata.obs[self.group_key]):
            members = row[row >= 0]
            deviations.append(Y[members] - Y[members].mean(axis=0))
        _, d, Vt = np.linalg.svd(np.concatenate(deviations), full_matrices=False)
        a = d[:1, np.newaxis] * Vt[:1]
        a_c = a[:, ctl]

        expected = Y[:, ctl] @ a_c.T @ np.linalg.inv(a_c @ a_c.T)
        assert np.allclose(res["W"].to_numpy(), expected)
        assert np.allclose(res["normalized"], Y - expected @ a)

    def test_ruv_r(self):
        adata = self.simulated()
        rsp.pp.glm_residuals(adata, design="~ group")
        rsp.tl.ruv_r(adata, None, k=1)

        self.assert_ruv_slots(adata, "RUVr", 1)
        assert self.abs_corr(adata.obsm["RUVr"][:, 0], adata.obs["unwanted"]) > 0.85
        assert adata.uns["RUVr"]["residuals"] == "deviance_residuals"

    def test_ruv_r_residuals_input(self):
        adata = self.simulated()

        with pytest.raises(AssertionError):
            rsp.tl.ruv_r(adata, None, k=1)
        with pytest.raises(ValueError):
            rsp.tl.ruv_r(adata, None, k=1, residuals=np.zeros((2, 2)))

    def test_ruv_r_uncentered(self):
        adata = self.simulated()
        rsp.pp.glm_residuals(adata, design="~ group", dispersion=0.1)
        res = rsp.tl.ruv_r(adata, None, k=1, inplace=False)
        res_raw = rsp.tl.ruv_r(adata, None, k=1, center=False, inplace=False)

        W = res_raw["W"].to_numpy()
        assert np.allclose(W.T @ W, np.eye(1))
        assert not np.allclose(np.abs(W), np.abs(res["W"].to_numpy()))

    def test_glm_lrt(self):
        adata = self.simulated()
        rsp.tl.ruv_g(adata, self.spike_ins, k=1)
        W = adata.obsm["RUVg"].copy()

        res = rsp.tl.glm_lrt(adata, design="~ group", factors="RUVg")

        assert list(res.columns) == ["logFC", "logCPM", "LR", "PValue", "FDR"]
        assert list(res.index) == list(adata.var_names)
        assert (res["FDR"] >= res["PValue"] - 1e-12).all()
        assert np.array_equal(adata.obsm["RUVg"], W)

        de = adata.var["de"].to_numpy()
        assert res["PValue"][de].median() < 1e-3
        assert res["PValue"][~de].median() > 0.1
        assert np.corrcoef(res["logFC"][de], adata.var["log_fc"][de])[0, 1] > 0.9

        assert adata.uns["glm_lrt"]["design"] == [
            "Intercept",
            "group[T.g2]",
            "RUVg_W_1",
        ]
        assert adata.uns["glm_lrt"]["coef"] == ["group[T.g2]"]

    def test_glm_lrt_inputs(self):
        adata = self.simulated()

        with pytest.raises(AssertionError):
            rsp.tl.glm_lrt(adata, design="~ group", factors="RUVg")
        with pytest.raises(KeyError):
            rsp.tl.glm_lrt(adata, design="~ group", coef="batch")

    def test_glm_lrt_on_normalized_counts_warns(self, caplog):
        adata = self.simulated()
        rsp.tl.ruv_g(adata, self.spike_ins, k=1)

        with caplog.at_level(logging.WARNING, logger="ruvseqpy"):
            rsp.tl.glm_lrt(
                adata, design="~ group", layer="RUVg_normalized", dispersion=0.05
            )
        assert "normalized counts" in caplog.text

    def test_glm_lrt_offset_layer(self):
        adata = self.simulated()
        rsp.pp.upper_quartile_normalize(adata, round=False, offset=True)
        rsp.tl.ruv_g(adata, self.spike_ins, k=1)

        res = rsp.tl.glm_lrt(
            adata, design="~ group", factors="RUVg", offset="uq_offset"
        )

        assert list(res.columns) == ["logFC", "logCPM", "LR", "PValue", "FDR"]
        de = adata.var["de"].to_numpy()
        assert res["PValue"][de].median() < 1e-3
        assert res["PValue"][~de].median() > 0.1

    def test_glm_lrt_several_coefficients(self):
        adata = self.simulated()
        coef = ["group[T.g2]", "batch[T.b2]"]

        res = rsp.tl.glm_lrt(adata, design="~ group + batch", coef=coef)

        assert list(res.columns) == [
            "logFC.group[T.g2]",
            "logFC.batch[T.b2]",
            "logCPM",
            "LR",
            "PValue",
            "FDR",
        ]
        assert adata.uns["glm_lrt"]["coef"] == coef
        de = adata.var["de"].to_numpy()
        assert (
            np.corrcoef(res["logFC.group[T.g2]"][de], adata.var["log_fc"][de])[0, 1]
            > 0.9
        )

        single = rsp.tl.glm_lrt(
            adata, design="~ group + batch", coef=coef[0], key_added=None
        )
        assert (res["LR"] >= single["LR"] - 1e-6).all()

    def test_glm_lrt_all_zero_gene(self):
        adata = self.simulated()
        adata.X[:, 0] = 0

        res = rsp.tl.glm_lrt(adata, design="~ group")

        assert res["PValue"].iloc[0] == 1
        assert res["LR"].iloc[0] == 0
        assert np.isfinite(res["PValue"]).all()

    def test_empirical_control_genes(self):
        adata = self.simulated()
        res = rsp.tl.glm_lrt(adata, design="~ group")
        controls = rsp.tl.empirical_control_genes(adata, n_de=100)

        assert controls.sum() == adata.n_vars - 100
        assert np.array_equal(adata.var["empirical_control"], controls)
        assert res["PValue"][~controls].max() <= res["PValue"][controls].min()

        rsp.tl.ruv_g(adata, "empirical_control", k=1)
        self.assert_ruv_slots(adata, "RUVg", 1)

        with pytest.raises(ValueError):
            rsp.tl.empirical_control_genes(adata, n_de=adata.n_vars)

    def test_empirical_control_genes_missing_from_results(self, caplog):
        adata = self.simulated()
        res = rsp.tl.glm_lrt(adata, design="~ group", key_added=None)
        untested = list(adata.var_names[:10])

        with caplog.at_level(logging.WARNING, logger="ruvseqpy"):
            controls = rsp.tl.empirical_control_genes(
                adata, results=res.drop(index=untested), n_de=20
            )

        assert "10 out of" in caplog.text
        assert controls[:10].all()
        assert controls.sum() == adata.n_vars - 20

    def test_rle(self):
        row = np.array([5.0, 10.0, 0.0, 40.0])
        adata = AnnData(np.tile(row, (4, 1)))
        rsp.tl.rle(adata)

        assert np.allclose(adata.layers["rle"], 0)
        assert np.allclose(adata.obs["rle_median"], 0)
        assert np.allclose(adata.obs["rle_iqr"], 0)

    def test_pca(self):
        adata = self.simulated()
        rsp.tl.ruv_g(adata, self.spike_ins, k=1)
        rsp.tl.pca(adata, layer="RUVg_normalized")

        assert adata.obsm["X_pca_counts"].shape == (adata.n_obs, 2)
        assert adata.uns["X_pca_counts"]["variance_ratio"].sum() <= 1
        assert adata.uns["X_pca_counts"]["layer"] == "RUVg_normalized"
