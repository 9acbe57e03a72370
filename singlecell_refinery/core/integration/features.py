"""Selection of features shared across datasets for integration."""

from typing import List, Sequence

import numpy as np
import pandas as pd

from ..dataset import CellDataset


def feature_ranks(dataset: CellDataset) -> pd.Series:
    """Rank (1 = most variable) of each variable feature of ``dataset``."""
    variable = dataset.variable_features
    if not variable:
        return pd.Series(dtype=float)
    var = dataset.var.loc[variable]
    source = str(dataset.adata.uns.get("variable_features_source", ""))
    if source.startswith("sct") and "sct_residual_variance" in var.columns:
        score = var["sct_residual_variance"].to_numpy()
        order = np.argsort(-score, kind="stable")
    elif "variable_rank" in var.columns:
        order = np.argsort(var["variable_rank"].to_numpy(), kind="stable")
    else:
        order = np.arange(len(variable))
    ranks = np.empty(len(variable))
    ranks[order] = np.arange(1, len(variable) + 1)
    return pd.Series(ranks, index=pd.Index(variable))


def select_integration_features(
    datasets: Sequence[CellDataset], nfeatures: int = 2000
) -> List[str]:
    """Genes variable in the most datasets, ties broken by median rank.

    Only genes present in every dataset are eligible.

    Parameters
    ----------
    datasets : Sequence[CellDataset]
        Datasets with variable features selected
    nfeatures : int
        Number of features to return

    Returns
    -------
    List[str]
        Features ordered from most to least preferred
    """
    shared = set(datasets[0].gene_ids)
    for ds in datasets[1:]:
        shared &= set(ds.gene_ids)

    ranks = pd.concat(
        [feature_ranks(ds).rename(i) for i, ds in enumerate(datasets)], axis=1
    )
    ranks = ranks.loc[ranks.index.isin(shared)]
    table = pd.DataFrame(
        {
            "n_datasets": ranks.notna().sum(axis=1),
            "median_rank": ranks.median(axis=1, skipna=True),
        }
    )
    table = table.sort_values(
        ["n_datasets", "median_rank"], ascending=[False, True], kind="stable"
    )
    return table.index[:nfeatures].astype(str).tolist()
