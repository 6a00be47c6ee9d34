from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Sequence

import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)

DEFAULT_BOUNDS: tuple[float, float] = (-1000.0, 1000.0)

# Compartments created by the assembly step; ids in these compartments are shared between sub-models.
CONNECTOR_COMPARTMENTS: frozenset[str] = frozenset({"u", "d", "fe", "b"})

_COMPARTMENT_RE = re.compile(r"\[([A-Za-z0-9]+)\]$")
_DEMAND_RE = re.compile(r"(?:^|_)DM_")
_SINK_RE = re.compile(r"(?:^|_)sink_")


class ModelStructureError(ValueError):
    """Raised when a model violates a structural invariant (shape, ids, required reactions)."""


class ReactionRole(str, Enum):
    COMMUNITY_BIOMASS = "community_biomass"
    BIOMASS = "biomass"
    DEMAND = "demand"
    SINK = "sink"
    EXCHANGE = "exchange"
    DIET_EXCHANGE = "diet_exchange"
    FECAL_EXCHANGE = "fecal_exchange"
    DIET_TRANSPORT = "diet_transport"
    FECAL_TRANSPORT = "fecal_transport"
    LUMEN_TRANSPORT = "lumen_transport"
    HOST_BLOOD_EXCHANGE = "host_blood_exchange"
    HOST_LUMEN_EXCHANGE = "host_lumen_exchange"
    INTERNAL = "internal"


def compartment_of(metabolite_id: str) -> str | None:
    """Return the compartment suffix of a metabolite id ('glc_D[e]' -> 'e'), or None."""
    m = _COMPARTMENT_RE.search(metabolite_id)
    return m.group(1) if m else None


def is_connector_metabolite(metabolite_id: str) -> bool:
    return compartment_of(metabolite_id) in CONNECTOR_COMPARTMENTS


def classify_reaction(reaction_id: str) -> ReactionRole:
    """
    Map a reaction id onto its role.

    This is the only place where reaction ids are pattern-matched; the role is
    stored on the model and carried through prefixing, renaming and merging.
    """
    rid = reaction_id
    if rid == "communityBiomass":
        return ReactionRole.COMMUNITY_BIOMASS
    if rid.startswith("Host_EX_"):
        return ReactionRole.HOST_BLOOD_EXCHANGE
    if rid.startswith("Host_IEX_"):
        return ReactionRole.HOST_LUMEN_EXCHANGE
    if rid.startswith("Diet_EX_") or (rid.startswith("EX_") and rid.endswith("[d]")):
        return ReactionRole.DIET_EXCHANGE
    if rid.startswith("EX_") and rid.endswith("[fe]"):
        return ReactionRole.FECAL_EXCHANGE
    if rid.startswith("DUt_"):
        return ReactionRole.DIET_TRANSPORT
    if rid.startswith("UFEt_"):
        return ReactionRole.FECAL_TRANSPORT
    if "_IEX_" in rid:
        return ReactionRole.LUMEN_TRANSPORT
    if "biomass" in rid:
        return ReactionRole.BIOMASS
    if _DEMAND_RE.search(rid):
        return ReactionRole.DEMAND
    if _SINK_RE.search(rid):
        return ReactionRole.SINK
    if rid.startswith("EX_") or "_EX_" in rid:
        return ReactionRole.EXCHANGE
    return ReactionRole.INTERNAL


def _duplicates(ids: Sequence[str]) -> list[str]:
    return sorted(k for k, n in Counter(ids).items() if n > 1)


@dataclass
class Model:
    """
    A stoichiometric network.

    Attributes
    ----------
    metabolites / reactions:
        Ordered, unique, case-sensitive ids.
    stoichiometry:
        Sparse (n_metabolites x n_reactions) matrix, stored as CSC.
    lower_bounds / upper_bounds / objective:
        One float per reaction.
    roles:
        One ReactionRole per reaction; classified from the ids when omitted.
    gene_rules:
        Optional side table reaction id -> gene-reaction rule.
    """

    id: str
    metabolites: list[str]
    reactions: list[str]
    stoichiometry: sparse.csc_matrix
    lower_bounds: np.ndarray
    upper_bounds: np.ndarray
    objective: np.ndarray | None = None
    roles: list[ReactionRole] | None = None
    gene_rules: dict[str, str] | None = field(default=None)

    def __post_init__(self) -> None:
        self.metabolites = [str(m) for m in self.metabolites]
        self.reactions = [str(r) for r in self.reactions]
        self.stoichiometry = sparse.csc_matrix(self.stoichiometry, dtype=float)
        self.stoichiometry.eliminate_zeros()
        self.lower_bounds = np.asarray(self.lower_bounds, dtype=float).copy()
        self.upper_bounds = np.asarray(self.upper_bounds, dtype=float).copy()
        if self.objective is None:
            self.objective = np.zeros(len(self.reactions))
        else:
            self.objective = np.asarray(self.objective, dtype=float).copy()
        if self.roles is None:
            self.roles = [classify_reaction(r) for r in self.reactions]
        else:
            self.roles = [ReactionRole(r) for r in self.roles]
        self.validate()

    @property
    def n_metabolites(self) -> int:
        return len(self.metabolites)

    @property
    def n_reactions(self) -> int:
        return len(self.reactions)

    def validate(self) -> None:
        n_m, n_r = self.n_metabolites, self.n_reactions
        if self.stoichiometry.shape != (n_m, n_r):
            raise ModelStructureError(
                f"Model {self.id!r}: stoichiometry shape {self.stoichiometry.shape} does not match "
                f"{n_m} metabolites x {n_r} reactions."
            )
        for kind, ids in (("metabolite", self.metabolites), ("reaction", self.reactions)):
            dup = _duplicates(ids)
            if dup:
                raise ModelStructureError(f"Model {self.id!r}: duplicate {kind} ids: {dup[:10]}")
        for name in ("lower_bounds", "upper_bounds", "objective"):
            arr = getattr(self, name)
            if arr.shape != (n_r,):
                raise ModelStructureError(
                    f"Model {self.id!r}: {name} has shape {arr.shape}, expected ({n_r},)."
                )
        if len(self.roles) != n_r:
            raise ModelStructureError(f"Model {self.id!r}: {len(self.roles)} roles for {n_r} reactions.")
        if self.gene_rules:
            unknown = set(self.gene_rules) - set(self.reactions)
            if unknown:
                raise ModelStructureError(
                    f"Model {self.id!r}: gene rules reference unknown reactions: {sorted(unknown)[:10]}"
                )

    # ------------------------------------------------------------------ lookup

    def reaction_lookup(self) -> dict[str, int]:
        return {r: i for i, r in enumerate(self.reactions)}

    def metabolite_lookup(self) -> dict[str, int]:
        return {m: i for i, m in enumerate(self.metabolites)}

    def reaction_index(self, reaction_id: str) -> int:
        try:
            return self.reactions.index(reaction_id)
        except ValueError as e:
            raise ModelStructureError(f"Reaction not found in model {self.id!r}: {reaction_id}") from e

    def has_reaction(self, reaction_id: str) -> bool:
        return reaction_id in self.reaction_lookup()

    def reactions_with_role(self, *roles: ReactionRole) -> list[str]:
        wanted = set(roles)
        return [r for r, role in zip(self.reactions, self.roles) if role in wanted]

    def role_of(self, reaction_id: str) -> ReactionRole:
        return self.roles[self.reaction_index(reaction_id)]

    def reaction_metabolites(self, reaction_id: str) -> dict[str, float]:
        """Return {metabolite_id: coefficient} for one reaction."""
        j = self.reaction_index(reaction_id)
        s = self.stoichiometry
        start, end = s.indptr[j], s.indptr[j + 1]
        return {
            self.metabolites[i]: float(v)
            for i, v in zip(s.indices[start:end], s.data[start:end])
            if v != 0
        }

    def metabolites_of_reactions(self, reaction_ids: Iterable[str]) -> list[str]:
        lookup = self.reaction_lookup()
        cols = [lookup[r] for r in reaction_ids if r in lookup]
        if not cols:
            return []
        rows = np.flatnonzero(self.stoichiometry[:, cols].getnnz(axis=1))
        return [self.metabolites[i] for i in rows]

    # ---------------------------------------------------------------- mutation

    def copy(self) -> Model:
        return Model(
            id=self.id,
            metabolites=list(self.metabolites),
            reactions=list(self.reactions),
            stoichiometry=self.stoichiometry.copy(),
            lower_bounds=self.lower_bounds.copy(),
            upper_bounds=self.upper_bounds.copy(),
            objective=self.objective.copy(),
            roles=list(self.roles),
            gene_rules=dict(self.gene_rules) if self.gene_rules else None,
        )

    def set_bounds(
        self,
        reaction_ids: Iterable[str],
        *,
        lower: float | None = None,
        upper: float | None = None,
    ) -> None:
        """Set bounds in place for the given reactions (all must exist)."""
        lookup = self.reaction_lookup()
        ids = list(reaction_ids)
        missing = [r for r in ids if r not in lookup]
        if missing:
            raise ModelStructureError(f"Reactions not found in model {self.id!r}: {missing[:10]}")
        idx = [lookup[r] for r in ids]
        if lower is not None:
            self.lower_bounds[idx] = float(lower)
        if upper is not None:
            self.upper_bounds[idx] = float(upper)

    def set_objective(self, reaction_id: str, coefficient: float = 1.0) -> None:
        j = self.reaction_index(reaction_id)
        self.objective[:] = 0.0
        self.objective[j] = float(coefficient)

    def rename_reactions(self, mapping: Mapping[str, str]) -> None:
        """Rename reactions in place; roles are kept."""
        self.reactions = [mapping.get(r, r) for r in self.reactions]
        if self.gene_rules:
            self.gene_rules = {mapping.get(r, r): rule for r, rule in self.gene_rules.items()}
        self.validate()

    def rename_metabolites(self, mapping: Mapping[str, str]) -> None:
        self.metabolites = [mapping.get(m, m) for m in self.metabolites]
        self.validate()

    def remove_reactions(self, reaction_ids: Iterable[str]) -> Model:
        """
        Return a copy without the given reactions.

        Metabolites that were only used by the removed reactions are dropped too.
        """
        drop = set(reaction_ids)
        lookup = self.reaction_lookup()
        missing = sorted(drop - set(lookup))
        if missing:
            raise ModelStructureError(f"Cannot remove unknown reactions from {self.id!r}: {missing[:10]}")

        keep = [j for j, r in enumerate(self.reactions) if r not in drop]
        removed = [lookup[r] for r in drop]
        s = self.stoichiometry.copy()
        s.eliminate_zeros()
        kept_s = s[:, keep]
        touched = s[:, removed].getnnz(axis=1) > 0
        orphaned = touched & (kept_s.getnnz(axis=1) == 0)
        rows = np.flatnonzero(~orphaned)

        return Model(
            id=self.id,
            metabolites=[self.metabolites[i] for i in rows],
            reactions=[self.reactions[j] for j in keep],
            stoichiometry=kept_s[rows, :],
            lower_bounds=self.lower_bounds[keep],
            upper_bounds=self.upper_bounds[keep],
            objective=self.objective[keep],
            roles=[self.roles[j] for j in keep],
            gene_rules={r: g for r, g in self.gene_rules.items() if r not in drop} if self.gene_rules else None,
        )

    def with_prefix(self, prefix: str) -> Model:
        """Return a copy with every metabolite and reaction id prefixed; roles are kept."""
        out = self.copy()
        out.metabolites = [prefix + m for m in out.metabolites]
        out.reactions = [prefix + r for r in out.reactions]
        if out.gene_rules:
            out.gene_rules = {prefix + r: g for r, g in out.gene_rules.items()}
        return out

    # ------------------------------------------------------------ construction

    @classmethod
    def from_reactions(
        cls,
        model_id: str,
        reactions: Mapping[str, Mapping[str, float]],
        *,
        bounds: Mapping[str, tuple[float, float]] | None = None,
        objective: Mapping[str, float] | None = None,
        default_bounds: tuple[float, float] = DEFAULT_BOUNDS,
        gene_rules: Mapping[str, str] | None = None,
    ) -> Model:
        """
        Build a model from {reaction_id: {metabolite_id: coefficient}}.

        Metabolites are ordered by first appearance.
        """
        bounds = bounds or {}
        objective = objective or {}
        met_index: dict[str, int] = {}
        rows: list[int] = []
        cols: list[int] = []
        data: list[float] = []
        for j, (rid, stoich) in enumerate(reactions.items()):
            for met, coeff in stoich.items():
                i = met_index.setdefault(met, len(met_index))
                rows.append(i)
                cols.append(j)
                data.append(float(coeff))
        rxn_ids = list(reactions)
        lb = [bounds.get(r, default_bounds)[0] for r in rxn_ids]
        ub = [bounds.get(r, default_bounds)[1] for r in rxn_ids]
        s = sparse.csc_matrix((data, (rows, cols)), shape=(len(met_index), len(rxn_ids)))
        return cls(
            id=model_id,
            metabolites=list(met_index),
            reactions=rxn_ids,
            stoichiometry=s,
            lower_bounds=lb,
            upper_bounds=ub,
            objective=[objective.get(r, 0.0) for r in rxn_ids],
            gene_rules=dict(gene_rules) if gene_rules else None,
        )

    @classmethod
    def from_cobra(cls, cobra_model) -> Model:
        """
        Convert a cobra.Model; reaction roles are classified here, once.
        """
        from cobra.util.solver import linear_reaction_coefficients

        metabolites = [m.id for m in cobra_model.metabolites]
        index = {m: i for i, m in enumerate(metabolites)}
        rows: list[int] = []
        cols: list[int] = []
        data: list[float] = []
        for j, rxn in enumerate(cobra_model.reactions):
            for met, coeff in rxn.metabolites.items():
                rows.append(index[met.id])
                cols.append(j)
                data.append(float(coeff))
        coefficients = {r.id: float(c) for r, c in linear_reaction_coefficients(cobra_model).items()}
        reactions = [r.id for r in cobra_model.reactions]
        gene_rules = {r.id: r.gene_reaction_rule for r in cobra_model.reactions if r.gene_reaction_rule}
        return cls(
            id=str(cobra_model.id or "model"),
            metabolites=metabolites,
            reactions=reactions,
            stoichiometry=sparse.csc_matrix((data, (rows, cols)), shape=(len(metabolites), len(reactions))),
            lower_bounds=[r.lower_bound for r in cobra_model.reactions],
            upper_bounds=[r.upper_bound for r in cobra_model.reactions],
            objective=[coefficients.get(r, 0.0) for r in reactions],
            gene_rules=gene_rules or None,
        )

    def to_cobra(self):
        """
        Convert to a cobra.Model. Bounds must be ordered (lb <= ub); cobra rejects crossed bounds.
        """
        from cobra import Metabolite, Reaction
        from cobra import Model as CobraModel

        cobra_model = CobraModel(self.id)
        mets = [Metabolite(m, compartment=compartment_of(m) or "c") for m in self.metabolites]
        cobra_model.add_metabolites(mets)

        s = self.stoichiometry
        reactions = []
        for j, rid in enumerate(self.reactions):
            rxn = Reaction(rid)
            rxn.bounds = (float(self.lower_bounds[j]), float(self.upper_bounds[j]))
            start, end = s.indptr[j], s.indptr[j + 1]
            rxn.add_metabolites(
                {mets[i]: float(v) for i, v in zip(s.indices[start:end], s.data[start:end]) if v != 0}
            )
            if self.gene_rules and rid in self.gene_rules:
                rxn.gene_reaction_rule = self.gene_rules[rid]
            reactions.append(rxn)
        cobra_model.add_reactions(reactions)

        objective = {rxn: float(c) for rxn, c in zip(reactions, self.objective) if c != 0}
        if objective:
            cobra_model.objective = objective
        return cobra_model
