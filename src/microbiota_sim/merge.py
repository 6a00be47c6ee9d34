from __future__ import annotations

import logging
from enum import Enum

import numpy as np
from scipy import sparse

from microbiota_sim.model import Model, ModelStructureError, is_connector_metabolite

logger = logging.getLogger(__name__)


class MergeMode(str, Enum):
    """
    How metabolites with the same id in both inputs are treated.

    DISJOINT: organism-style merge. Inputs are expected to live in separate
    namespaces; only connector metabolites ([u], [d], [fe], [b]) may be shared
    and are unified. Any other shared id is an error.
    GLUED: every shared metabolite id is unified into one row (connecting a
    compartment or connector sub-model to a larger model).
    """

    DISJOINT = "disjoint"
    GLUED = "glued"


def merge_models(
    a: Model,
    b: Model,
    mode: MergeMode | str = MergeMode.DISJOINT,
    merge_genes: bool = False,
    model_id: str | None = None,
) -> Model:
    """
    Combine two models into one.

    The result lists a's ids first, followed by the ids of b that a does not
    have. Bounds, objective coefficients and roles are carried per reaction.
    Columns of b are appended after the columns of a; rows of b are mapped
    onto the merged metabolite list, which yields a block-diagonal matrix when
    nothing is shared.

    Parameters
    ----------
    merge_genes:
        If False, gene rules are dropped from the result; if True the two
        side tables are combined.
    """
    mode = MergeMode(mode)

    shared_rxns = set(a.reactions).intersection(b.reactions)
    if shared_rxns:
        raise ModelStructureError(
            f"Cannot merge {a.id!r} and {b.id!r}: {len(shared_rxns)} shared reaction ids, "
            f"e.g. {sorted(shared_rxns)[:5]}. Prefix organism ids before merging."
        )

    index = a.metabolite_lookup()
    shared = [m for m in b.metabolites if m in index]
    if mode is MergeMode.DISJOINT:
        clashes = [m for m in shared if not is_connector_metabolite(m)]
        if clashes:
            raise ModelStructureError(
                f"Cannot merge {a.id!r} and {b.id!r} in disjoint mode: {len(clashes)} shared "
                f"non-connector metabolites, e.g. {clashes[:5]}."
            )

    metabolites = list(a.metabolites)
    for m in b.metabolites:
        if m not in index:
            index[m] = len(metabolites)
            metabolites.append(m)

    row_map = np.fromiter((index[m] for m in b.metabolites), dtype=np.int64, count=b.n_metabolites)
    a_coo = a.stoichiometry.tocoo()
    b_coo = b.stoichiometry.tocoo()
    rows = np.concatenate([a_coo.row.astype(np.int64), row_map[b_coo.row]])
    cols = np.concatenate([a_coo.col.astype(np.int64), b_coo.col.astype(np.int64) + a.n_reactions])
    data = np.concatenate([a_coo.data, b_coo.data])
    stoichiometry = sparse.csc_matrix(
        (data, (rows, cols)),
        shape=(len(metabolites), a.n_reactions + b.n_reactions),
    )

    gene_rules = None
    if merge_genes:
        gene_rules = {**(a.gene_rules or {}), **(b.gene_rules or {})} or None

    logger.debug(
        "Merged %s (%d mets, %d rxns) + %s (%d mets, %d rxns) [%s]: %d shared metabolites",
        a.id,
        a.n_metabolites,
        a.n_reactions,
        b.id,
        b.n_metabolites,
        b.n_reactions,
        mode.value,
        len(shared),
    )
    return Model(
        id=model_id or a.id,
        metabolites=metabolites,
        reactions=a.reactions + b.reactions,
        stoichiometry=stoichiometry,
        lower_bounds=np.concatenate([a.lower_bounds, b.lower_bounds]),
        upper_bounds=np.concatenate([a.upper_bounds, b.upper_bounds]),
        objective=np.concatenate([a.objective, b.objective]),
        roles=a.roles + b.roles,
        gene_rules=gene_rules,
    )
