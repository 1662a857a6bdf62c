import numpy as np
import pytest

import anndata as ad

from .dimensionality import choose_n_pcs, find_elbow_point


def test_find_elbow_point():
    ratio = [10, 5, 1, 0.9, 0.8, 0.7, 0.6, 0.5, 0.4, 0.2]
    assert find_elbow_point(ratio) == 3


def test_find_elbow_point_short_curves():
    assert find_elbow_point([0.7, 0.3]) == 2
    assert find_elbow_point([1.0]) == 1
    with pytest.raises(ValueError):
        find_elbow_point([])


def test_choose_n_pcs_respects_minimum():
    adata = ad.AnnData(X=np.zeros((3, 2)))
    adata.uns["pca"] = {"variance_ratio": np.array([10, 5, 1, 0.9, 0.8, 0.7, 0.6, 0.5, 0.4, 0.2])}
    assert choose_n_pcs(adata) == 5
    assert choose_n_pcs(adata, min_pcs=2) == 3
    assert choose_n_pcs(adata, min_pcs=50) == 10


def test_choose_n_pcs_requires_pca():
    with pytest.raises(ValueError):
        choose_n_pcs(ad.AnnData(X=np.zeros((3, 2))))
