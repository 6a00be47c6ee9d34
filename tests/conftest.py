from __future__ import annotations

import pytest

from microbiota_sim.assembly import (
    add_community_biomass,
    assemble_community,
    merge_organisms,
    prepare_organism_model,
)
from microbiota_sim.compartments import build_compartment_model
from microbiota_sim.host import adapt_host_model, host_exchange_metabolites
from microbiota_sim.model import Model


def make_organism(name: str = "org", extra_metabolites: tuple[str, ...] = ()) -> Model:
    """
    Glucose-only toy organism: glc[e] -> glc[c] -> biomass[c].

    extra_metabolites are secreted to [e] by their own transport + exchange.
    """
    reactions = {
        "EX_glc(e)": {"glc[e]": -1.0},
        "GLCt": {"glc[e]": -1.0, "glc[c]": 1.0},
        "biomass": {"glc[c]": -1.0, "biomass[c]": 1.0},
        "EX_biomass(e)": {"biomass[c]": -1.0},
        "DM_glc[c]": {"glc[c]": -1.0},
        "sink_glc[c]": {"glc[c]": -1.0},
    }
    for met in extra_metabolites:
        reactions[f"{met}_prod"] = {"glc[c]": -1.0, f"{met}[c]": 1.0}
        reactions[f"{met}t"] = {f"{met}[c]": -1.0, f"{met}[e]": 1.0}
        reactions[f"EX_{met}(e)"] = {f"{met}[e]": -1.0}
    return Model.from_reactions(
        name,
        reactions,
        bounds={"EX_glc(e)": (-10.0, 1000.0), "biomass": (0.0, 1000.0), "DM_glc[c]": (-5.0, 1000.0)},
        objective={"EX_biomass(e)": 1.0},
    )


def make_host() -> Model:
    return Model.from_reactions(
        "human",
        {
            "EX_glc[e]": {"glc[e]": -1.0},
            "EX_o2[e]": {"o2[e]": -1.0},
            "GLCt": {"glc[e]": -1.0, "glc[c]": 1.0},
            "O2t": {"o2[e]": -1.0, "o2[c]": 1.0},
            "biomass_reaction": {"glc[c]": -1.0, "o2[c]": -1.0},
            "DM_glc[c]": {"glc[c]": -1.0},
        },
    )


def make_community(
    abundances: dict[str, float] | None = None,
    *,
    host: bool = False,
    sample_id: str = "S1",
) -> Model:
    abundances = abundances or {"OrgA": 0.5, "OrgB": 0.5}
    raw = {name: make_organism(name) for name in abundances}
    exchange = {m for model in raw.values() for m in model.metabolites if m.endswith("[e]")}

    adapted = host_mets = None
    if host:
        raw_host = make_host()
        host_mets = host_exchange_metabolites(raw_host)
        adapted = adapt_host_model(raw_host)

    community = merge_organisms(
        (prepare_organism_model(m, name) for name, m in raw.items()),
        len(raw),
    )
    community.id = f"microbiota_model_samp_{sample_id}"
    compartments = build_compartment_model(exchange, host_metabolites=host_mets)
    model = assemble_community(community, compartments, host=adapted)
    return add_community_biomass(model, abundances)


@pytest.fixture
def organism() -> Model:
    return make_organism("org")


@pytest.fixture
def community() -> Model:
    return make_community()


@pytest.fixture
def host_community() -> Model:
    return make_community(host=True)
