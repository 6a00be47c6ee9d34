from __future__ import annotations

import logging

import pandas as pd

from microbiota_sim.checkpoint import SimulationState

logger = logging.getLogger(__name__)

LONG_COLUMNS: tuple[str, ...] = ("sample_id", "scenario", "table", "reaction_id", "diet_flux", "fecal_flux")


class TableError(RuntimeError):
    """Raised when result tables cannot be built."""


def results_long_table(state: SimulationState) -> pd.DataFrame:
    """
    Flatten net production / net uptake into one row per (sample, scenario, table, exchange).

    table is 'net_production' or 'net_uptake'.
    """
    rows = []
    for sid, result in state.samples.items():
        for table, data in (("net_production", result.net_production), ("net_uptake", result.net_uptake)):
            for scenario, fluxes in data.items():
                for rid, (diet_flux, fecal_flux) in fluxes.items():
                    rows.append((sid, scenario, table, rid, diet_flux, fecal_flux))
    return pd.DataFrame(rows, columns=list(LONG_COLUMNS))


def results_wide_table(
    long_df: pd.DataFrame,
    *,
    scenario: str = "standard",
    table: str = "net_production",
    column: str = "fecal_flux",
) -> pd.DataFrame:
    """
    Pivot one scenario/table into a samples x exchanges matrix of ``column``.
    """
    missing = set(LONG_COLUMNS) - set(long_df.columns)
    if missing:
        raise TableError(f"Missing columns to build wide table: {sorted(missing)}")
    if column not in ("diet_flux", "fecal_flux"):
        raise TableError(f"column must be 'diet_flux' or 'fecal_flux', got {column!r}")

    df = long_df[(long_df["scenario"] == scenario) & (long_df["table"] == table)]
    if df.duplicated(subset=["sample_id", "reaction_id"]).any():
        raise TableError("Duplicate rows found for (sample_id, reaction_id).")

    wide = df.pivot(index="sample_id", columns="reaction_id", values=column)
    wide.columns = wide.columns.astype(str)
    wide.columns.name = None
    return wide.reset_index()


def objective_table(state: SimulationState) -> pd.DataFrame:
    """One row per (sample, scenario): objective value and feasibility."""
    rows = [
        (sid, scenario, result.objective.get(scenario), ok, result.completed)
        for sid, result in state.samples.items()
        for scenario, ok in result.feasible.items()
    ]
    return pd.DataFrame(rows, columns=["sample_id", "scenario", "objective_value", "feasible", "completed"])
