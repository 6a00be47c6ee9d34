from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse

from microbiota_sim.model import Model, ModelStructureError, ReactionRole, classify_reaction, compartment_of


@pytest.mark.parametrize(
    ("rid", "role"),
    [
        ("communityBiomass", ReactionRole.COMMUNITY_BIOMASS),
        ("OrgA_biomass525", ReactionRole.BIOMASS),
        ("OrgA_DM_atp[c]", ReactionRole.DEMAND),
        ("DM_glc[c]", ReactionRole.DEMAND),
        ("OrgA_sink_pheme[c]", ReactionRole.SINK),
        ("EX_glc(e)", ReactionRole.EXCHANGE),
        ("EX_glc[d]", ReactionRole.DIET_EXCHANGE),
        ("Diet_EX_glc[d]", ReactionRole.DIET_EXCHANGE),
        ("EX_glc[fe]", ReactionRole.FECAL_EXCHANGE),
        ("EX_microbeBiomass[fe]", ReactionRole.FECAL_EXCHANGE),
        ("DUt_glc", ReactionRole.DIET_TRANSPORT),
        ("UFEt_glc", ReactionRole.FECAL_TRANSPORT),
        ("UFEt_microbeBiomass", ReactionRole.FECAL_TRANSPORT),
        ("OrgA_IEX_glc[u]tr", ReactionRole.LUMEN_TRANSPORT),
        ("Host_EX_o2[e]b", ReactionRole.HOST_BLOOD_EXCHANGE),
        ("Host_IEX_glc[u]tr", ReactionRole.HOST_LUMEN_EXCHANGE),
        ("OrgA_GLCt", ReactionRole.INTERNAL),
        ("OrgA_Biomass", ReactionRole.INTERNAL),
    ],
)
def test_classify_reaction(rid: str, role: ReactionRole) -> None:
    assert classify_reaction(rid) is role


def test_compartment_of() -> None:
    assert compartment_of("glc_D[e]") == "e"
    assert compartment_of("glc[fe]") == "fe"
    assert compartment_of("glc") is None


def test_from_reactions_builds_matrix(organism: Model) -> None:
    assert organism.n_reactions == 6
    assert organism.n_metabolites == 3
    assert organism.stoichiometry.shape == (3, 6)
    assert organism.reaction_metabolites("GLCt") == {"glc[e]": -1.0, "glc[c]": 1.0}
    assert organism.lower_bounds[organism.reaction_index("EX_glc(e)")] == -10.0
    assert organism.objective[organism.reaction_index("EX_biomass(e)")] == 1.0
    assert organism.role_of("DM_glc[c]") is ReactionRole.DEMAND


def test_validate_rejects_shape_mismatch() -> None:
    with pytest.raises(ModelStructureError, match="shape"):
        Model(
            id="bad",
            metabolites=["a[c]"],
            reactions=["R1", "R2"],
            stoichiometry=sparse.csc_matrix((1, 3)),
            lower_bounds=[0, 0],
            upper_bounds=[1, 1],
        )


def test_validate_rejects_duplicate_ids() -> None:
    with pytest.raises(ModelStructureError, match="duplicate reaction"):
        Model(
            id="bad",
            metabolites=["a[c]"],
            reactions=["R1", "R1"],
            stoichiometry=sparse.csc_matrix((1, 2)),
            lower_bounds=[0, 0],
            upper_bounds=[1, 1],
        )


def test_ids_are_case_sensitive() -> None:
    m = Model.from_reactions("toy", {"R1": {"a[c]": -1.0}, "r1": {"A[c]": 1.0}})
    assert m.reactions == ["R1", "r1"]
    assert m.metabolites == ["a[c]", "A[c]"]


def test_crossed_bounds_are_structurally_valid() -> None:
    m = Model.from_reactions("toy", {"R1": {"a[c]": -1.0}}, bounds={"R1": (5.0, 1.0)})
    assert m.lower_bounds[0] > m.upper_bounds[0]


def test_remove_reactions_drops_orphaned_metabolites(organism: Model) -> None:
    out = organism.remove_reactions(["biomass", "EX_biomass(e)"])
    assert "biomass[c]" not in out.metabolites
    assert "glc[c]" in out.metabolites
    assert out.n_reactions == 4
    # input untouched
    assert organism.n_reactions == 6


def test_remove_unknown_reaction_raises(organism: Model) -> None:
    with pytest.raises(ModelStructureError):
        organism.remove_reactions(["nope"])


def test_with_prefix_keeps_roles(organism: Model) -> None:
    out = organism.with_prefix("OrgA_")
    assert out.reactions[0] == "OrgA_EX_glc(e)"
    assert out.metabolites[0] == "OrgA_glc[e]"
    assert out.roles == organism.roles
    assert organism.reactions[0] == "EX_glc(e)"


def test_set_bounds_and_objective(organism: Model) -> None:
    m = organism.copy()
    m.set_bounds(["GLCt", "biomass"], lower=-1.0, upper=2.0)
    assert m.lower_bounds[m.reaction_index("GLCt")] == -1.0
    assert m.upper_bounds[m.reaction_index("biomass")] == 2.0
    m.set_objective("biomass")
    assert np.count_nonzero(m.objective) == 1
    with pytest.raises(ModelStructureError):
        m.set_bounds(["missing"], lower=0.0)


def test_rename_reactions_keeps_roles(organism: Model) -> None:
    m = organism.copy()
    m.rename_reactions({"DM_glc[c]": "renamed"})
    assert m.has_reaction("renamed")
    assert m.role_of("renamed") is ReactionRole.DEMAND


def test_cobra_round_trip(organism: Model) -> None:
    cobra_model = organism.to_cobra()
    assert len(cobra_model.reactions) == organism.n_reactions
    assert cobra_model.reactions.get_by_id("EX_glc(e)").lower_bound == -10.0

    back = Model.from_cobra(cobra_model)
    assert back.reactions == organism.reactions
    assert set(back.metabolites) == set(organism.metabolites)
    assert back.reaction_metabolites("biomass") == {"glc[c]": -1.0, "biomass[c]": 1.0}
    assert back.objective[back.reaction_index("EX_biomass(e)")] == 1.0
