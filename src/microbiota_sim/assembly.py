from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator, Mapping, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse

from microbiota_sim.compartments import DEFAULT_OBJECTIVE_REACTION, biomass_metabolite, build_compartment_model
from microbiota_sim.host import adapt_host_model, host_exchange_metabolites
from microbiota_sim.merge import MergeMode, merge_models
from microbiota_sim.model import Model, ModelStructureError, compartment_of

if TYPE_CHECKING:
    from microbiota_sim.config import AssemblyConfig
    from microbiota_sim.io import ModelStore

logger = logging.getLogger(__name__)

SEQUENTIAL_THRESHOLD = 500
COMMUNITY_BIOMASS = "communityBiomass"
COMMUNITY_BIOMASS_METABOLITE = "microbeBiomass[u]"
FECAL_BIOMASS_EXCHANGE = "EX_microbeBiomass[fe]"
ORGANISM_BIOMASS_METABOLITE = biomass_metabolite(DEFAULT_OBJECTIVE_REACTION)


class AssemblyError(RuntimeError):
    """Raised when a merge tree loses or duplicates reactions."""


@dataclass
class MergeLevel:
    """Output of one tree level: the merged pairs and the odd model left over, if any."""

    merged: list[Model]
    single: Model | None = None


# --------------------------------------------------------------------- organisms


def prepare_organism_model(model: Model, name: str) -> Model:
    """
    Namespace a raw organism model for use in a community.

    The organism's own EX_ reactions are removed, every id gets '<name>_', its
    extracellular metabolites move to the lumen as '<name>_<met>[u]', and each
    is linked to the shared lumen pool by '<name>_IEX_<met>[u]tr':
    '<met>[u] <=> <name>_<met>[u]'.
    """
    prefix = f"{name}_"
    exchanges = [r for r in model.reactions if r.startswith("EX_")]
    trimmed = model.remove_reactions(exchanges).with_prefix(prefix)

    extracellular = [m for m in trimmed.metabolites if compartment_of(m) == "e"]
    trimmed.rename_metabolites({m: m[: -len("[e]")] + "[u]" for m in extracellular})

    own = [m[: -len("[e]")] + "[u]" for m in extracellular]
    shared = [m[len(prefix):] for m in own]
    n = len(own)
    iex = Model(
        id=f"{name}_lumen",
        metabolites=shared + own,
        reactions=[f"{prefix}IEX_{m}tr" for m in shared],
        stoichiometry=sparse.vstack([-sparse.identity(n), sparse.identity(n)], format="csc"),
        lower_bounds=np.full(n, -1000.0),
        upper_bounds=np.full(n, 1000.0),
    )
    prepared = merge_models(iex, trimmed, mode=MergeMode.GLUED, model_id=name)
    logger.debug("Prepared organism %s: %d reactions, %d lumen exchanges", name, prepared.n_reactions, n)
    return prepared


def extracellular_metabolites(model: Model) -> list[str]:
    return [m for m in model.metabolites if compartment_of(m) == "e"]


def add_community_biomass(model: Model, abundances: Mapping[str, float]) -> Model:
    """
    Add the community biomass reaction and its route to the fecal compartment.

    communityBiomass: sum(abundance * <org>_biomass[c]) -> microbeBiomass[u]
    UFEt_microbeBiomass: microbeBiomass[u] -> microbeBiomass[fe]
    EX_microbeBiomass[fe]: microbeBiomass[fe] <=>
    """
    present = model.metabolite_lookup()
    stoich: dict[str, float] = {}
    for org, abundance in abundances.items():
        met = f"{org}_{ORGANISM_BIOMASS_METABOLITE}"
        if met not in present:
            logger.warning("Biomass metabolite missing for %s (skipped): %s", org, met)
            continue
        stoich[met] = -float(abundance)
    if not stoich:
        raise ModelStructureError(f"Model {model.id!r}: no organism biomass metabolites found.")
    stoich[COMMUNITY_BIOMASS_METABOLITE] = 1.0

    biomass = Model.from_reactions(
        f"{model.id}_community_biomass",
        {
            COMMUNITY_BIOMASS: stoich,
            "UFEt_microbeBiomass": {COMMUNITY_BIOMASS_METABOLITE: -1.0, "microbeBiomass[fe]": 1.0},
            FECAL_BIOMASS_EXCHANGE: {"microbeBiomass[fe]": -1.0},
        },
        bounds={COMMUNITY_BIOMASS: (0.0, 1000.0), "UFEt_microbeBiomass": (0.0, 1000.0)},
    )
    return merge_models(model, biomass, mode=MergeMode.GLUED, model_id=model.id)


# -------------------------------------------------------------------- merge tree


def merge_sequential(models: Iterable[Model], merge_genes: bool = False) -> Model:
    """
    Left fold over ``models``.

    The iterable is consumed lazily, so only the accumulator and the next model
    are alive at any time.
    """
    acc: Model | None = None
    count = 0
    for m in models:
        acc = m if acc is None else merge_models(acc, m, mode=MergeMode.DISJOINT, merge_genes=merge_genes)
        count += 1
    if acc is None:
        raise AssemblyError("No models to merge.")
    logger.info("Merged %d models sequentially", count)
    return acc


def _merge_level(models: Sequence[Model], n_jobs: int, merge_genes: bool) -> MergeLevel:
    pairs = [(models[i], models[i + 1]) for i in range(0, len(models) - 1, 2)]
    single = models[-1] if len(models) % 2 else None
    if n_jobs == 1 or len(pairs) < 2:
        merged = [merge_models(a, b, merge_genes=merge_genes) for a, b in pairs]
    else:
        merged = Parallel(n_jobs=n_jobs, backend="threading")(
            delayed(merge_models)(a, b, MergeMode.DISJOINT, merge_genes) for a, b in pairs
        )
    return MergeLevel(merged=list(merged), single=single)


def merge_pairwise_tree(models: Sequence[Model], n_jobs: int = 1, merge_genes: bool = False) -> Model:
    """
    Merge models as a balanced binary tree.

    Each level merges neighbouring pairs; when a level has an odd count its
    last model is set aside. Set-aside models are folded into the tree result
    in the order their levels were processed.

    Raises
    ------
    AssemblyError
        If the result does not contain exactly the inputs' reactions.
    """
    models = list(models)
    if not models:
        raise AssemblyError("No models to merge.")
    expected = sum(m.n_reactions for m in models)

    singles: list[Model] = []
    level = models
    depth = 0
    while len(level) > 1:
        out = _merge_level(level, n_jobs=n_jobs, merge_genes=merge_genes)
        if out.single is not None:
            singles.append(out.single)
        logger.debug("Merge level %d: %d -> %d models (single=%s)", depth, len(level), len(out.merged), out.single is not None)
        level = out.merged
        depth += 1

    result = level[0]
    for single in singles:
        result = merge_models(result, single, mode=MergeMode.DISJOINT, merge_genes=merge_genes)

    if result.n_reactions != expected:
        raise AssemblyError(
            f"Merge tree produced {result.n_reactions} reactions, expected {expected} "
            f"({len(models)} inputs, {len(singles)} leftovers)."
        )
    logger.info("Merged %d models in a %d-level tree", len(models), depth)
    return result


def merge_organisms(
    models: Iterable[Model],
    n_models: int,
    *,
    sequential_threshold: int = SEQUENTIAL_THRESHOLD,
    n_jobs: int = 1,
    merge_genes: bool = False,
) -> Model:
    """
    Merge organism models, sequentially for large communities and as a tree otherwise.

    Large communities are folded lazily to keep memory flat.
    """
    if n_models >= sequential_threshold:
        return merge_sequential(models, merge_genes=merge_genes)
    return merge_pairwise_tree(list(models), n_jobs=n_jobs, merge_genes=merge_genes)


def assemble_community(community: Model, compartment_model: Model, host: Model | None = None) -> Model:
    """
    Couple merged organisms with the (adapted) host and the diet/lumen/fecal compartments.

    The host is merged first in disjoint mode (only lumen ids are shared),
    then the compartment model is glued on.
    """
    model = community
    if host is not None:
        model = merge_models(host, community, mode=MergeMode.DISJOINT, model_id=community.id)
    return merge_models(model, compartment_model, mode=MergeMode.GLUED, model_id=community.id)


# ------------------------------------------------------------------ per sample


def present_organisms(abundances: pd.Series, threshold: float) -> pd.Series:
    return abundances[abundances > threshold]


def build_sample_model(
    sample_id: str,
    abundances: pd.Series,
    store: ModelStore,
    *,
    objective_reaction: str,
    host: Model | None = None,
    host_metabolites: Sequence[str] | None = None,
    sequential_threshold: int = SEQUENTIAL_THRESHOLD,
    n_jobs: int = 1,
    merge_genes: bool = False,
) -> Model:
    """
    Build one sample's community model from its organism abundances.

    ``host`` must already be adapted (see ``adapt_host_model``).
    """
    if abundances.empty:
        raise AssemblyError(f"Sample {sample_id!r} has no organisms above the abundance threshold.")

    exchange_mets: set[str] = set()

    def _organisms() -> Iterator[Model]:
        for name in abundances.index:
            raw = store.load_organism(str(name))
            exchange_mets.update(extracellular_metabolites(raw))
            yield prepare_organism_model(raw, str(name))

    community = merge_organisms(
        _organisms(),
        len(abundances),
        sequential_threshold=sequential_threshold,
        n_jobs=n_jobs,
        merge_genes=merge_genes,
    )
    community.id = f"microbiota_model_samp_{sample_id}"

    compartments = build_compartment_model(
        exchange_mets,
        objective_reaction=objective_reaction,
        host_metabolites=host_metabolites,
    )
    model = assemble_community(community, compartments, host=host)
    model = add_community_biomass(model, {str(k): float(v) for k, v in abundances.items()})
    logger.info(
        "Sample %s: %d organisms, %d metabolites, %d reactions",
        sample_id,
        len(abundances),
        model.n_metabolites,
        model.n_reactions,
    )
    return model


def build_sample_models(config: AssemblyConfig, store: ModelStore, sample_ids: Sequence[str] | None = None) -> list[str]:
    """
    Build and save a community model for every sample of the abundance table.

    Returns the ids of the samples written.
    """
    from microbiota_sim.io import load_abundance_table, load_model

    table = load_abundance_table(config.abundance_file)
    samples = list(sample_ids) if sample_ids is not None else [str(c) for c in table.columns]
    missing = [s for s in samples if s not in table.columns]
    if missing:
        raise AssemblyError(f"Samples not found in abundance table: {missing[:10]}")

    host = None
    host_mets = None
    if config.host_model_path is not None:
        raw_host = load_model(config.host_model_path)
        host_mets = host_exchange_metabolites(raw_host, objective_reaction=config.objective_reaction)
        host = adapt_host_model(raw_host)

    written = []
    for sid in samples:
        present = present_organisms(table[sid], config.abundance_threshold)
        model = build_sample_model(
            sid,
            present,
            store,
            objective_reaction=config.objective_reaction,
            host=host,
            host_metabolites=host_mets,
            sequential_threshold=config.sequential_threshold,
            n_jobs=config.n_jobs,
            merge_genes=config.merge_genes,
        )
        store.save_community(model, sid, host=host is not None)
        written.append(sid)
    return written


def community_members(model: Model) -> list[str]:
    """Organism names referenced by the communityBiomass reaction."""
    if not model.has_reaction(COMMUNITY_BIOMASS):
        raise ModelStructureError(f"Model {model.id!r} has no {COMMUNITY_BIOMASS} reaction.")
    suffix = "_" + ORGANISM_BIOMASS_METABOLITE
    return [
        m[: -len(suffix)]
        for m, c in model.reaction_metabolites(COMMUNITY_BIOMASS).items()
        if c < 0 and m.endswith(suffix)
    ]
