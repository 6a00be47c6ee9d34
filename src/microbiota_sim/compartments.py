from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
from scipy import sparse

from microbiota_sim.model import Model, ModelStructureError, ReactionRole, compartment_of

logger = logging.getLogger(__name__)

# Diet and fecal exchanges are reversible; diet->lumen and lumen->fecal transport is one-way.
EXCHANGE_BOUNDS: tuple[float, float] = (-1000.0, 1000.0)
TRANSPORT_BOUNDS: tuple[float, float] = (0.0, 1000.0)

DEFAULT_OBJECTIVE_REACTION = "EX_biomass(e)"


def biomass_metabolite(objective_reaction: str) -> str:
    """'EX_biomass(e)' -> 'biomass[c]'"""
    return objective_reaction.replace("EX_", "").replace("(e)", "[c]")


def _base_name(metabolite_id: str) -> str:
    if compartment_of(metabolite_id) != "e":
        raise ModelStructureError(f"Expected an extracellular [e] metabolite, got: {metabolite_id}")
    return metabolite_id[: -len("[e]")]


def build_compartment_model(
    exchange_metabolites: Iterable[str],
    *,
    objective_reaction: str = DEFAULT_OBJECTIVE_REACTION,
    host_metabolites: Iterable[str] | None = None,
    model_id: str = "diet_lumen_fecal",
) -> Model:
    """
    Build the diet [d] / lumen [u] / fecal [fe] sub-model.

    For every extracellular metabolite m[e] four reactions are created, grouped per
    metabolite in this order:

    - EX_m[d]:  m[d] <=>          (diet exchange)
    - DUt_m:    m[d] -> m[u]      (diet to lumen)
    - UFEt_m:   m[u] -> m[fe]     (lumen to feces)
    - EX_m[fe]: m[fe] <=>         (fecal exchange)

    The organisms' biomass metabolite, derived from ``objective_reaction``, is
    never given diet or fecal compartments.
    """
    mets = set(exchange_metabolites)
    if host_metabolites is not None:
        mets.update(host_metabolites)

    biomass = biomass_metabolite(objective_reaction)
    excluded = {biomass, biomass.replace("[c]", "[e]")}
    bases = [_base_name(m) for m in sorted(mets - excluded)]
    n = len(bases)

    metabolites = [f"{b}[d]" for b in bases] + [f"{b}[u]" for b in bases] + [f"{b}[fe]" for b in bases]
    reactions: list[str] = []
    rows: list[int] = []
    cols: list[int] = []
    data: list[float] = []
    for i, base in enumerate(bases):
        d, u, fe = i, n + i, 2 * n + i
        j = 4 * i
        reactions.extend([f"EX_{base}[d]", f"DUt_{base}", f"UFEt_{base}", f"EX_{base}[fe]"])
        rows.extend([d, d, u, u, fe, fe])
        cols.extend([j, j + 1, j + 1, j + 2, j + 2, j + 3])
        data.extend([-1.0, -1.0, 1.0, -1.0, 1.0, -1.0])

    per_met = [EXCHANGE_BOUNDS, TRANSPORT_BOUNDS, TRANSPORT_BOUNDS, EXCHANGE_BOUNDS]
    lower = np.array([b[0] for b in per_met] * n, dtype=float)
    upper = np.array([b[1] for b in per_met] * n, dtype=float)
    roles = [
        ReactionRole.DIET_EXCHANGE,
        ReactionRole.DIET_TRANSPORT,
        ReactionRole.FECAL_TRANSPORT,
        ReactionRole.FECAL_EXCHANGE,
    ] * n

    logger.info("Built diet/lumen/fecal compartments for %d metabolites (%d excluded)", n, len(mets) - n)
    return Model(
        id=model_id,
        metabolites=metabolites,
        reactions=reactions,
        stoichiometry=sparse.csc_matrix((data, (rows, cols)), shape=(3 * n, 4 * n)),
        lower_bounds=lower,
        upper_bounds=upper,
        roles=roles,
    )
