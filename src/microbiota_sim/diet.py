from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping

import pandas as pd

from microbiota_sim.model import Model, ReactionRole

logger = logging.getLogger(__name__)


class DietError(ValueError):
    """Raised when a diet table cannot be read or has invalid structure."""


class DietScenario(str, Enum):
    RICH = "rich"
    STANDARD = "standard"
    PERSONALIZED = "personalized"

    @property
    def model_dir(self) -> str:
        """Sub-directory for constrained models of this scenario."""
        return {"rich": "Rich", "standard": "Diet", "personalized": "Personalized"}[self.value]


# Metabolites secreted by the host into the gut lumen (minimum uptake, mmol/gDW/h).
HUMAN_METABOLITES: dict[str, float] = {
    "gchola": -10.0,
    "tdchola": -10.0,
    "tchola": -10.0,
    "dgchol": -10.0,
    "34dhphe": -10.0,
    "5htrp": -10.0,
    "Lkynr": -10.0,
    "f1a": -1.0,
    "gncore1": -1.0,
    "gncore2": -1.0,
    "dsT_antigen": -1.0,
    "sTn_antigen": -1.0,
    "core8": -1.0,
    "core7": -1.0,
    "core5": -1.0,
    "core4": -1.0,
    "ha": -1.0,
    "cspg_a": -1.0,
    "cspg_b": -1.0,
    "cspg_c": -1.0,
    "cspg_d": -1.0,
    "cspg_e": -1.0,
    "hspg": -1.0,
}

_EXTRACELLULAR_SUFFIX = re.compile(r"(\(e\)|\[e\]|\[d\])$")


def diet_reaction_id(exchange_id: str) -> str:
    """
    Map a diet table id onto the community's diet exchange.

    'EX_glc(e)' / 'EX_glc[e]' / 'EX_glc[d]' -> 'Diet_EX_glc[d]'
    """
    rid = exchange_id.strip()
    if rid.startswith("Diet_"):
        rid = rid[len("Diet_"):]
    if not rid.startswith("EX_"):
        raise DietError(f"Not an exchange reaction id: {exchange_id!r}")
    return "Diet_" + _EXTRACELLULAR_SUFFIX.sub("", rid) + "[d]"


@dataclass(frozen=True)
class DietApplyResult:
    """What was changed on a model by ``apply_diet``."""

    closed: int
    applied: dict[str, float]
    skipped: list[str]


def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Diet file not found: {path}")
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    try:
        return pd.read_csv(path, sep=sep, **kwargs)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DietError(f"Cannot parse diet file {path}: {e}") from e


def load_diet(path: str | Path) -> dict[str, float]:
    """
    Load a diet table: one row per exchange, first column the exchange id,
    second column the daily flux.

    Returns
    -------
    dict diet reaction id -> lower bound. Fluxes are negated (uptake is
    negative flux).
    """
    p = Path(path)
    df = _read_table(p)
    if df.shape[1] < 2:
        raise DietError(f"Diet file {p} needs two columns (exchange id, flux), got {df.shape[1]}.")

    ids = df.iloc[:, 0].astype(str)
    flux = pd.to_numeric(df.iloc[:, 1], errors="coerce")
    bad = ids[flux.isna()].tolist()
    if bad:
        raise DietError(f"Non-numeric fluxes in diet file {p}: {bad[:10]}")

    diet = {diet_reaction_id(r): -float(v) for r, v in zip(ids, flux)}
    logger.info("Loaded diet: %s (%d exchanges)", p, len(diet))
    return diet


def load_personalized_diets(path: str | Path) -> dict[str, dict[str, float]]:
    """
    Load per-sample diets: rows are exchanges, one column per sample.

    Values are taken as lower bounds as given (already negative for uptake).
    """
    p = Path(path)
    df = _read_table(p, index_col=0)
    if df.empty:
        raise DietError(f"Personalized diet file {p} is empty.")
    df = df.apply(pd.to_numeric, errors="coerce")
    index = [diet_reaction_id(str(r)) for r in df.index]
    diets = {
        str(sample): {rid: float(v) for rid, v in zip(index, df[sample]) if pd.notna(v)}
        for sample in df.columns
    }
    logger.info("Loaded personalized diets: %s (%d exchanges x %d samples)", p, len(index), len(diets))
    return diets


def apply_diet(
    model: Model,
    diet: Mapping[str, float],
    *,
    include_human_metabolites: bool = True,
) -> tuple[Model, DietApplyResult]:
    """
    Return a copy of ``model`` constrained to ``diet``.

    All diet exchange lower bounds are closed (0), then each diet entry sets
    its reaction's lower bound. With ``include_human_metabolites`` the
    host-secreted gut metabolites are unlocked afterwards. Entries without a
    matching reaction are logged and skipped.
    """
    out = model.copy()
    diet_rxns = out.reactions_with_role(ReactionRole.DIET_EXCHANGE)
    out.set_bounds(diet_rxns, lower=0.0)

    bounds = dict(diet)
    if include_human_metabolites:
        bounds.update({f"Diet_EX_{met}[d]": lb for met, lb in HUMAN_METABOLITES.items()})

    present = set(diet_rxns)
    applied: dict[str, float] = {}
    skipped: list[str] = []
    for rid, lb in bounds.items():
        if rid not in present:
            skipped.append(rid)
            continue
        applied[rid] = float(lb)

    by_bound: dict[float, list[str]] = {}
    for rid, lb in applied.items():
        by_bound.setdefault(lb, []).append(rid)
    for lb, rids in by_bound.items():
        out.set_bounds(rids, lower=lb)

    if skipped:
        logger.debug("Diet exchanges not in model (skipped): %s", skipped)
    logger.info(
        "Applied diet to %s: %d exchanges closed, %d set, %d skipped",
        model.id,
        len(diet_rxns),
        len(applied),
        len(skipped),
    )
    return out, DietApplyResult(closed=len(diet_rxns), applied=applied, skipped=skipped)
