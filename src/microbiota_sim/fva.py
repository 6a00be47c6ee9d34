from __future__ import annotations

import logging
from typing import Iterable

import pandas as pd

logger = logging.getLogger(__name__)


class FVAError(RuntimeError):
    """Raised when FVA cannot be computed."""


def run_targeted_fva(
    model,
    targets: Iterable[str],
    fraction_of_optimum: float = 0.9999,
    processes: int | None = None,
) -> pd.DataFrame:
    """
    Run Flux Variability Analysis on a subset of reactions.

    Parameters
    ----------
    model:
        cobra.Model with all constraints and the objective already set.
    targets:
        Reaction IDs to run FVA on. Order is preserved, duplicates dropped.
    fraction_of_optimum:
        Fraction of the optimal objective enforced while ranging (0, 1].
    processes:
        Worker processes for cobra's FVA; None lets cobra decide.

    Returns
    -------
    DataFrame with columns: reaction_id, fva_min, fva_max (in target order)
    """
    from cobra.flux_analysis import flux_variability_analysis

    target_list = list(dict.fromkeys(str(t) for t in targets))
    if not target_list:
        raise ValueError("targets is empty")
    if not (0.0 < float(fraction_of_optimum) <= 1.0):
        raise ValueError("fraction_of_optimum must be in (0, 1].")

    logger.debug(
        "Running targeted FVA: n_targets=%d, fraction_of_optimum=%.4f, processes=%s",
        len(target_list),
        fraction_of_optimum,
        processes,
    )
    try:
        fva_df = flux_variability_analysis(
            model,
            reaction_list=target_list,
            fraction_of_optimum=float(fraction_of_optimum),
            processes=processes,
        )
    except Exception as e:  # noqa: BLE001
        raise FVAError(f"FVA failed: {e}") from e

    # cobra returns index=reaction_id, columns=["minimum","maximum"]
    out = fva_df.rename(columns={"minimum": "fva_min", "maximum": "fva_max"})
    out.index = out.index.astype(str)
    out = out.reindex(target_list).rename_axis("reaction_id").reset_index()
    return out[["reaction_id", "fva_min", "fva_max"]]
