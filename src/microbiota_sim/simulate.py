from __future__ import annotations

import logging
from typing import Mapping, Sequence

import pandas as pd
from tqdm import tqdm

from microbiota_sim.checkpoint import CheckpointStore, FluxTable, SampleResult, SimulationState
from microbiota_sim.config import SimulationConfig
from microbiota_sim.constraints import HostConstraints, apply_simulation_constraints, exchange_pairs
from microbiota_sim.diet import DietScenario, apply_diet, load_diet, load_personalized_diets
from microbiota_sim.io import ModelStore
from microbiota_sim.model import Model
from microbiota_sim.solver import CobraSolver, Solver

logger = logging.getLogger(__name__)

FECAL = "fecal"
DIET = "diet"


def _ranges(df: pd.DataFrame) -> dict[str, tuple[float, float]]:
    return {str(r): (float(lo), float(hi)) for r, lo, hi in zip(df["reaction_id"], df["fva_min"], df["fva_max"])}


def flux_tables(
    pairs: Sequence[tuple[str, str]],
    fecal: pd.DataFrame,
    diet: pd.DataFrame,
) -> tuple[FluxTable, FluxTable]:
    """
    Combine FVA ranges into net production and net uptake tables.

    net production: fecal id -> (min diet flux, max fecal flux)
    net uptake:     fecal id -> (max diet flux, min fecal flux)

    Diet and fecal reactions are matched through ``pairs``.
    """
    fecal_r = _ranges(fecal)
    diet_r = _ranges(diet)
    production: FluxTable = {}
    uptake: FluxTable = {}
    for fecal_id, diet_id in pairs:
        if fecal_id not in fecal_r or diet_id not in diet_r:
            continue
        fmin, fmax = fecal_r[fecal_id]
        dmin, dmax = diet_r[diet_id]
        production[fecal_id] = (dmin, fmax)
        uptake[fecal_id] = (dmax, fmin)
    return production, uptake


class SimulationDriver:
    """
    Run the diet scenarios for a batch of samples with resumable checkpoints.

    Per sample: rich diet (optional), standard diet, personalized diet
    (optional). An infeasible scenario is recorded and the sample continues;
    structural errors stop the batch with earlier checkpoints intact.
    """

    def __init__(
        self,
        config: SimulationConfig,
        *,
        solver: Solver | None = None,
        store: ModelStore | None = None,
        checkpoints: CheckpointStore | None = None,
    ) -> None:
        self.config = config
        self.solver = solver or CobraSolver(
            solver=config.solver,
            processes=config.n_workers,
            fva_fraction=config.fva_fraction,
        )
        self.store = store or ModelStore(config.models_dir)
        self.checkpoints = checkpoints or CheckpointStore(config.results_dir)
        self.host = (
            HostConstraints(config.host_biomass_reaction, config.host_biomass_max_flux) if config.host else None
        )
        self._diet: dict[str, float] | None = None
        self._personalized: dict[str, dict[str, float]] | None = None

    @property
    def diet(self) -> dict[str, float]:
        if self._diet is None:
            self._diet = load_diet(self.config.diet_file)
        return self._diet

    @property
    def personalized_diets(self) -> dict[str, dict[str, float]]:
        if self._personalized is None:
            self._personalized = load_personalized_diets(self.config.personalized_diet_file)
        return self._personalized

    def enabled_scenarios(self, sample_id: str) -> list[DietScenario]:
        """Scenarios this configuration runs for ``sample_id``."""
        scenarios = [DietScenario.STANDARD]
        if self.config.rich_diet:
            scenarios.insert(0, DietScenario.RICH)
        if self.config.personalized_diet and sample_id in self.personalized_diets:
            scenarios.append(DietScenario.PERSONALIZED)
        return scenarios

    def run(self, sample_ids: Sequence[str]) -> SimulationState:
        cfg = self.config
        if cfg.force_repeat:
            state = SimulationState()
            logger.info("force_repeat set: ignoring existing checkpoints in %s", cfg.results_dir)
        else:
            state = self.checkpoints.load()

        if cfg.personalized_diet:
            logger.warning("Personalized diet simulation is experimental; check its results separately.")

        pending = []
        for i, sid in enumerate(sample_ids):
            existing = state.samples.get(sid)
            if existing is not None and existing.is_trustworthy(
                cfg.compute_profiles, cfg.min_aggregate_flux, scenarios=self.enabled_scenarios(sid)
            ):
                logger.debug("Sample %s already simulated (skipped)", sid)
                continue
            pending.append((i, sid))
        logger.info("Simulating %d of %d samples (%d reused)", len(pending), len(sample_ids), len(sample_ids) - len(pending))

        for i, sid in tqdm(pending, desc="samples", disable=not cfg.show_progress):
            result = self.simulate_sample(sid)
            state.record(result, index=i)
            self.checkpoints.save_intermediate(state)

        self.checkpoints.save_final(state)
        infeasible = state.infeasible()
        if infeasible:
            logger.warning("Infeasible scenarios: %s", {k: len(v) for k, v in infeasible.items()})
        return state

    def simulate_sample(self, sample_id: str) -> SampleResult:
        cfg = self.config
        result = SampleResult(sample_id=sample_id)
        community = self.store.load_community(sample_id, host=cfg.host)
        model = apply_simulation_constraints(
            community,
            lower_biomass_bound=cfg.lower_biomass_bound,
            host=self.host,
        )
        pairs = exchange_pairs(model)

        if cfg.rich_diet:
            self._run_scenario(result, DietScenario.RICH, model, pairs)

        diet_model, _ = apply_diet(model, self.diet, include_human_metabolites=cfg.include_human_metabolites)
        self._run_scenario(result, DietScenario.STANDARD, diet_model, pairs)

        if cfg.personalized_diet:
            diet = self.personalized_diets.get(sample_id)
            if diet is None:
                logger.warning("No personalized diet for sample %s (skipped)", sample_id)
            else:
                p_model, _ = apply_diet(model, diet, include_human_metabolites=cfg.include_human_metabolites)
                self._run_scenario(result, DietScenario.PERSONALIZED, p_model, pairs)

        result.completed = True
        return result

    def _run_scenario(
        self,
        result: SampleResult,
        scenario: DietScenario,
        model: Model,
        pairs: Sequence[tuple[str, str]],
    ) -> None:
        profile_sets: Mapping[str, Sequence[str]] | None = None
        if self.config.compute_profiles:
            profile_sets = {FECAL: [f for f, _ in pairs], DIET: [d for _, d in pairs]}

        solution = self.solver.solve(model, profile_sets)
        if not solution.feasible:
            logger.warning("Sample %s: %s diet is infeasible (status=%s)", result.sample_id, scenario.value, solution.status)
            result.record_infeasible(scenario)
            return

        production = uptake = None
        if profile_sets is not None:
            production, uptake = flux_tables(pairs, solution.ranges[FECAL], solution.ranges[DIET])
        result.record_solution(scenario, solution.objective_value, production, uptake)
        logger.info("Sample %s: %s diet objective %.6g", result.sample_id, scenario.value, solution.objective_value)

        if self.config.save_constrained_models:
            self.store.save_constrained(model, result.sample_id, scenario)
