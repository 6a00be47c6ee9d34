from __future__ import annotations

import logging

import pandas as pd
import pytest
from conftest import make_host, make_organism

from microbiota_sim.assembly import (
    AssemblyError,
    add_community_biomass,
    assemble_community,
    build_sample_model,
    community_members,
    merge_organisms,
    merge_pairwise_tree,
    merge_sequential,
    prepare_organism_model,
)
from microbiota_sim.compartments import build_compartment_model
from microbiota_sim.host import adapt_host_model
from microbiota_sim.model import Model, ModelStructureError, ReactionRole


def _prepared(n: int) -> list[Model]:
    return [prepare_organism_model(make_organism(f"Org{i}", extra_metabolites=(f"m{i}",)), f"Org{i}") for i in range(n)]


def _signature(model: Model) -> tuple[set, set, set]:
    coo = model.stoichiometry.tocoo()
    coefficients = {(model.metabolites[i], model.reactions[j], v) for i, j, v in zip(coo.row, coo.col, coo.data)}
    return set(model.metabolites), set(model.reactions), coefficients


def test_prepare_organism_model() -> None:
    prepared = prepare_organism_model(make_organism("OrgA"), "OrgA")
    assert not any(r.startswith("EX_") or r.startswith("OrgA_EX_") for r in prepared.reactions)
    assert "OrgA_glc[u]" in prepared.metabolites
    assert "OrgA_glc[e]" not in prepared.metabolites
    assert prepared.reaction_metabolites("OrgA_IEX_glc[u]tr") == {"glc[u]": -1.0, "OrgA_glc[u]": 1.0}
    assert prepared.reaction_metabolites("OrgA_GLCt") == {"OrgA_glc[u]": -1.0, "OrgA_glc[c]": 1.0}
    assert prepared.role_of("OrgA_IEX_glc[u]tr") is ReactionRole.LUMEN_TRANSPORT
    assert prepared.n_reactions == 5
    assert prepared.n_metabolites == 4


@pytest.mark.parametrize("n", [1, 2, 3, 5, 7, 8])
def test_sequential_and_tree_merges_agree(n: int) -> None:
    sequential = merge_sequential(iter(_prepared(n)))
    tree = merge_pairwise_tree(_prepared(n))
    assert _signature(sequential) == _signature(tree)
    assert tree.n_reactions == sum(m.n_reactions for m in _prepared(n))


def test_tree_merge_with_threads_agrees() -> None:
    assert _signature(merge_pairwise_tree(_prepared(6), n_jobs=2)) == _signature(merge_sequential(_prepared(6)))


def test_merge_organisms_threshold_switches_strategy(caplog) -> None:
    caplog.set_level(logging.INFO, logger="microbiota_sim.assembly")
    merge_organisms(iter(_prepared(3)), 3, sequential_threshold=2)
    assert "sequentially" in caplog.text
    caplog.clear()
    merge_organisms(_prepared(3), 3, sequential_threshold=10)
    assert "tree" in caplog.text


def test_empty_merge_raises() -> None:
    with pytest.raises(AssemblyError):
        merge_sequential([])
    with pytest.raises(AssemblyError):
        merge_pairwise_tree([])


def test_add_community_biomass() -> None:
    community = merge_pairwise_tree(_prepared(2))
    model = add_community_biomass(community, {"Org0": 0.25, "Org1": 0.75})
    assert model.reaction_metabolites("communityBiomass") == {
        "Org0_biomass[c]": -0.25,
        "Org1_biomass[c]": -0.75,
        "microbeBiomass[u]": 1.0,
    }
    assert model.reaction_metabolites("UFEt_microbeBiomass") == {"microbeBiomass[u]": -1.0, "microbeBiomass[fe]": 1.0}
    assert model.role_of("EX_microbeBiomass[fe]") is ReactionRole.FECAL_EXCHANGE
    assert sorted(community_members(model)) == ["Org0", "Org1"]


def test_add_community_biomass_skips_missing_organisms(caplog) -> None:
    community = merge_pairwise_tree(_prepared(2))
    model = add_community_biomass(community, {"Org0": 0.5, "Ghost": 0.5})
    assert "Ghost" in caplog.text
    assert community_members(model) == ["Org0"]
    with pytest.raises(ModelStructureError):
        add_community_biomass(community, {"Ghost": 1.0})


def test_assemble_community_with_host() -> None:
    organisms = merge_pairwise_tree(_prepared(2))
    compartments = build_compartment_model(["glc[e]", "m0[e]", "m1[e]", "o2[e]"])
    host = adapt_host_model(make_host())
    model = assemble_community(organisms, compartments, host=host)

    assert model.n_reactions == organisms.n_reactions + compartments.n_reactions + host.n_reactions
    # lumen glucose is shared by organisms, host and the compartments
    users = [r for r in model.reactions if "glc[u]" in model.reaction_metabolites(r)]
    assert set(users) >= {"Org0_IEX_glc[u]tr", "Org1_IEX_glc[u]tr", "Host_IEX_glc[u]tr", "DUt_glc", "UFEt_glc"}


class _DictStore:
    def __init__(self, organisms: dict[str, Model]) -> None:
        self.organisms = organisms
        self.loaded: list[str] = []

    def load_organism(self, name: str) -> Model:
        self.loaded.append(name)
        return self.organisms[name]


def test_build_sample_model_from_abundances() -> None:
    store = _DictStore({f"Org{i}": make_organism(f"Org{i}", extra_metabolites=(f"m{i}",)) for i in range(3)})
    abundances = pd.Series({"Org0": 0.2, "Org2": 0.8})
    model = build_sample_model("S1", abundances, store, objective_reaction="EX_biomass(e)")

    assert store.loaded == ["Org0", "Org2"]
    assert model.id == "microbiota_model_samp_S1"
    assert {"EX_glc[d]", "EX_m0[fe]", "EX_m2[fe]"} <= set(model.reactions)
    assert "EX_m1[fe]" not in model.reactions
    assert not any("biomass[d]" in m for m in model.metabolites)
    assert sorted(community_members(model)) == ["Org0", "Org2"]


def test_build_sample_model_without_organisms_raises() -> None:
    with pytest.raises(AssemblyError):
        build_sample_model("S1", pd.Series(dtype=float), _DictStore({}), objective_reaction="EX_biomass(e)")
