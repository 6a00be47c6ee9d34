from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from microbiota_sim.assembly import COMMUNITY_BIOMASS, FECAL_BIOMASS_EXCHANGE, community_members
from microbiota_sim.model import Model, ModelStructureError, ReactionRole

logger = logging.getLogger(__name__)

DEFAULT_LOWER_BIOMASS_BOUND = 0.4
COMMUNITY_BIOMASS_UPPER_BOUND = 1.0
EXCHANGE_UPPER_BOUND = 1e6
SINK_LOWER_BOUND = -1.0

# Blood metabolites the host may take up freely.
HOST_BLOOD_UPTAKE: dict[str, float] = {"h2o": -100.0, "hco3": -100.0, "o2": -100.0}
HOST_MIN_BIOMASS = 0.001

# Host-derived metabolites the host may secrete into the lumen.
HOST_LUMEN_METABOLITES: tuple[str, ...] = (
    "gchola",
    "tdchola",
    "tchola",
    "dgchol",
    "34dhphe",
    "5htrp",
    "Lkynr",
    "f1a",
    "gncore1",
    "gncore2",
    "dsT_antigen",
    "sTn_antigen",
    "core8",
    "core7",
    "core5",
    "core4",
    "ha",
    "cspg_a",
    "cspg_b",
    "cspg_c",
    "cspg_d",
    "cspg_e",
    "hspg",
)
HOST_LUMEN_BOUND = -1000.0

_SCALED_ROLES = (
    ReactionRole.DIET_TRANSPORT,
    ReactionRole.FECAL_TRANSPORT,
    ReactionRole.FECAL_EXCHANGE,
    ReactionRole.DIET_EXCHANGE,
    ReactionRole.EXCHANGE,
)


@dataclass(frozen=True)
class HostConstraints:
    """Host settings for the constraint policy."""

    biomass_reaction: str
    max_biomass_flux: float = 1.0
    prefix: str = "Host_"

    @property
    def prefixed_biomass_reaction(self) -> str:
        if self.biomass_reaction.startswith(self.prefix):
            return self.biomass_reaction
        return self.prefix + self.biomass_reaction


def _require(model: Model, reaction_id: str) -> None:
    if not model.has_reaction(reaction_id):
        raise ModelStructureError(f"Model {model.id!r} is missing required reaction: {reaction_id}")


def _set_optional(model: Model, reaction_ids: Sequence[str], lower: float) -> int:
    """Set lower bounds where the reaction exists; log and skip the rest."""
    present = model.reaction_lookup()
    found = [rid for rid in reaction_ids if rid in present]
    for rid in reaction_ids:
        if rid not in present:
            logger.debug("Reaction not found in model (skipped): %s", rid)
    model.set_bounds(found, lower=lower)
    return len(found)


def diet_reaction_name(reaction_id: str) -> str:
    """'EX_glc[d]' -> 'Diet_EX_glc[d]'"""
    return reaction_id if reaction_id.startswith("Diet_") else "Diet_" + reaction_id


def apply_host_constraints(model: Model, host: HostConstraints) -> None:
    """Host rules, in place: closed blood and lumen exchanges except the allow-lists, bounded host growth."""
    biomass = host.prefixed_biomass_reaction
    _require(model, biomass)

    blood = model.reactions_with_role(ReactionRole.HOST_BLOOD_EXCHANGE)
    model.set_bounds(blood, lower=0.0)
    for met, lb in HOST_BLOOD_UPTAKE.items():
        if not _set_optional(model, [f"{host.prefix}EX_{met}[e]b"], lb):
            logger.warning("Host blood exchange not found (skipped): %s", met)

    lumen = model.reactions_with_role(ReactionRole.HOST_LUMEN_EXCHANGE)
    model.set_bounds(lumen, lower=0.0)
    unlocked = _set_optional(
        model,
        [f"{host.prefix}IEX_{met}[u]tr" for met in HOST_LUMEN_METABOLITES],
        HOST_LUMEN_BOUND,
    )

    model.set_bounds([biomass], lower=HOST_MIN_BIOMASS, upper=host.max_biomass_flux)
    logger.info(
        "Host constraints: %d blood exchanges, %d lumen exchanges (%d unlocked), biomass %s in [%.3g, %.3g]",
        len(blood),
        len(lumen),
        unlocked,
        biomass,
        HOST_MIN_BIOMASS,
        host.max_biomass_flux,
    )


def apply_simulation_constraints(
    model: Model,
    *,
    lower_biomass_bound: float = DEFAULT_LOWER_BIOMASS_BOUND,
    host: HostConstraints | None = None,
) -> Model:
    """
    Return a constrained copy of a community model.

    Rules applied, in order:

    1. organism biomass reactions get lower bound 0;
    2. demand reactions of every community member get lower bound 0, sink
       reactions lower bound -1;
    3. the objective becomes EX_microbeBiomass[fe];
    4. diet exchanges EX_<met>[d] are renamed Diet_EX_<met>[d];
    5. communityBiomass is bounded to [lower_biomass_bound, 1];
    6. transport and exchange upper bounds are raised to 1e6;
    7. with a host, see ``apply_host_constraints``.

    The input model is never modified.
    """
    _require(model, COMMUNITY_BIOMASS)
    _require(model, FECAL_BIOMASS_EXCHANGE)
    out = model.copy()

    out.set_bounds(out.reactions_with_role(ReactionRole.BIOMASS), lower=0.0)

    members = tuple(f"{m}_" for m in community_members(out))
    demands = [r for r in out.reactions_with_role(ReactionRole.DEMAND) if r.startswith(members)]
    sinks = [r for r in out.reactions_with_role(ReactionRole.SINK) if r.startswith(members)]
    out.set_bounds(demands, lower=0.0)
    out.set_bounds(sinks, lower=SINK_LOWER_BOUND)

    out.set_objective(FECAL_BIOMASS_EXCHANGE)

    diet = [r for r in out.reactions_with_role(ReactionRole.DIET_EXCHANGE) if r.startswith("EX_")]
    out.rename_reactions({r: diet_reaction_name(r) for r in diet})

    out.set_bounds([COMMUNITY_BIOMASS], lower=lower_biomass_bound, upper=COMMUNITY_BIOMASS_UPPER_BOUND)
    out.set_bounds(out.reactions_with_role(*_SCALED_ROLES), upper=EXCHANGE_UPPER_BOUND)

    if host is not None:
        apply_host_constraints(out, host)

    logger.debug(
        "Constrained %s: %d members, %d demands, %d sinks, %d diet exchanges renamed",
        out.id,
        len(members),
        len(demands),
        len(sinks),
        len(diet),
    )
    return out


def exchange_pairs(model: Model) -> list[tuple[str, str]]:
    """
    Pair each fecal exchange EX_<met>[fe] with its diet exchange Diet_EX_<met>[d].

    Pairs are matched by metabolite, never by position; fecal exchanges
    without a diet counterpart (and the community biomass exchange) are left out.
    """
    diet = set(model.reactions_with_role(ReactionRole.DIET_EXCHANGE))
    pairs = []
    for fecal in model.reactions_with_role(ReactionRole.FECAL_EXCHANGE):
        if fecal == FECAL_BIOMASS_EXCHANGE:
            continue
        met = fecal[len("EX_"): -len("[fe]")]
        diet_id = f"Diet_EX_{met}[d]"
        if diet_id in diet:
            pairs.append((fecal, diet_id))
        else:
            logger.debug("No diet exchange for %s", fecal)
    return pairs
