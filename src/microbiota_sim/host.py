from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
from scipy import sparse

from microbiota_sim.merge import MergeMode, merge_models
from microbiota_sim.model import Model, ReactionRole, compartment_of

logger = logging.getLogger(__name__)

HOST_PREFIX = "Host_"
LUMEN_EXCHANGE_BOUNDS: tuple[float, float] = (-1000.0, 1000.0)


def host_exchange_metabolites(host: Model, objective_reaction: str | None = None) -> list[str]:
    """
    Extracellular metabolites of the host's exchange reactions (biomass excluded).

    These are folded into the diet/lumen/fecal compartments so the host can
    take them up from, or secrete them into, the lumen.
    """
    exchanges = [r for r in host.reactions_with_role(ReactionRole.EXCHANGE) if r != objective_reaction]
    return sorted(m for m in host.metabolites_of_reactions(exchanges) if compartment_of(m) == "e")


def _body_fluid_connector(host: Model, prefix: str) -> Model:
    """
    Copy every reaction touching an [e] metabolite into a [b] (body fluid) sub-model.

    Reactions become '<prefix><rxn>b', metabolites '<prefix><met>' with [e] -> [b].
    Bounds and objective coefficients are carried over.
    """
    ext_rows = [i for i, m in enumerate(host.metabolites) if "[e]" in m]
    by_row = host.stoichiometry.tocsr()
    cols = np.unique(by_row[ext_rows, :].indices) if ext_rows else np.array([], dtype=int)
    block = host.stoichiometry[:, cols]
    rows = np.flatnonzero(block.getnnz(axis=1))
    return Model(
        id=f"{host.id}_body_fluid",
        metabolites=[prefix + host.metabolites[i].replace("[e]", "[b]") for i in rows],
        reactions=[f"{prefix}{host.reactions[j]}b" for j in cols],
        stoichiometry=block[rows, :],
        lower_bounds=host.lower_bounds[cols],
        upper_bounds=host.upper_bounds[cols],
        objective=host.objective[cols],
    )


def _lumen_connector(host_metabolites: Sequence[str], prefix: str, model_id: str) -> Model:
    """
    '<prefix>IEX_<met>[u]tr': <met>[u] <=> <prefix><met>[e], one per host [e] metabolite.
    """
    lumen = [m[len(prefix):].replace("[e]", "[u]") for m in host_metabolites]
    n = len(lumen)
    stoichiometry = sparse.vstack([-sparse.identity(n), sparse.identity(n)], format="csc")
    return Model(
        id=model_id,
        metabolites=lumen + list(host_metabolites),
        reactions=[f"{prefix}IEX_{m}tr" for m in lumen],
        stoichiometry=stoichiometry,
        lower_bounds=np.full(n, LUMEN_EXCHANGE_BOUNDS[0]),
        upper_bounds=np.full(n, LUMEN_EXCHANGE_BOUNDS[1]),
    )


def adapt_host_model(host: Model, prefix: str = HOST_PREFIX) -> Model:
    """
    Rewrite a host model so it can be coupled to a microbial community.

    1. reactions touching [e] metabolites are copied into a body-fluid [b]
       connector (host blood side);
    2. the host's own EX_ exchange reactions are removed (demand and sink
       reactions stay);
    3. all remaining host ids get ``prefix``;
    4. the body-fluid connector is merged in;
    5. each remaining host [e] metabolite is linked to the lumen [u] through a
       reversible '<prefix>IEX_<met>[u]tr' transporter.

    The result exposes [b] exchanges and [u] transporters only.
    """
    host.validate()
    body_fluid = _body_fluid_connector(host, prefix)

    exchanges = [r for r in host.reactions if r.startswith("EX_")]
    trimmed = host.remove_reactions(exchanges).with_prefix(prefix)
    coupled = merge_models(body_fluid, trimmed, mode=MergeMode.GLUED, model_id=f"{prefix}{host.id}")

    extracellular = [m for m in coupled.metabolites if "[e]" in m]
    lumen = _lumen_connector(extracellular, prefix, model_id=f"{host.id}_lumen")
    adapted = merge_models(lumen, coupled, mode=MergeMode.GLUED, model_id=f"{prefix}{host.id}")

    logger.info(
        "Adapted host %s: %d exchanges removed, %d body-fluid reactions, %d lumen transporters",
        host.id,
        len(exchanges),
        body_fluid.n_reactions,
        lumen.n_reactions,
    )
    return adapted
