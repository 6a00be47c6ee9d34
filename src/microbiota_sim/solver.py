from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence

import numpy as np
import pandas as pd

from microbiota_sim.fva import run_targeted_fva
from microbiota_sim.model import Model

logger = logging.getLogger(__name__)

OPTIMAL = "optimal"
INFEASIBLE = "infeasible"


@dataclass
class SolveResult:
    """
    Outcome of one optimisation.

    ranges maps each requested profile set name to a DataFrame with
    columns reaction_id, fva_min, fva_max.
    """

    status: str
    objective_value: float | None = None
    fluxes: pd.Series | None = None
    ranges: dict[str, pd.DataFrame] = field(default_factory=dict)

    @property
    def feasible(self) -> bool:
        return self.status == OPTIMAL


class Solver(Protocol):
    def solve(self, model: Model, profile_sets: Mapping[str, Sequence[str]] | None = None) -> SolveResult:
        ...


def configure_solver(cobra_model, solver: str, tolerance: float | None = None):
    """
    Set the LP solver on a cobra model; ``tolerance`` applies to feasibility and optimality.
    """
    cobra_model.solver = solver
    if tolerance is not None:
        cobra_model.solver.configuration.tolerances.feasibility = tolerance
        cobra_model.solver.configuration.tolerances.optimality = tolerance
    return cobra_model


class CobraSolver:
    """
    Solve models through cobrapy.

    Any non-optimal status is reported as infeasible. A model with crossed
    bounds (lb > ub) is infeasible by construction and never reaches the LP.
    """

    def __init__(
        self,
        solver: str = "glpk",
        processes: int | None = 1,
        fva_fraction: float = 0.9999,
        tolerance: float | None = None,
    ) -> None:
        self.solver = solver
        self.processes = processes
        self.fva_fraction = fva_fraction
        self.tolerance = tolerance

    def solve(self, model: Model, profile_sets: Mapping[str, Sequence[str]] | None = None) -> SolveResult:
        crossed = np.flatnonzero(model.lower_bounds > model.upper_bounds)
        if crossed.size:
            logger.warning(
                "Model %s has %d reactions with lower bound > upper bound, e.g. %s",
                model.id,
                crossed.size,
                [model.reactions[j] for j in crossed[:5]],
            )
            return SolveResult(status=INFEASIBLE)

        cobra_model = configure_solver(model.to_cobra(), self.solver, self.tolerance)
        solution = cobra_model.optimize(raise_error=False)
        if solution.status != OPTIMAL:
            logger.debug("Solver status for %s: %s", model.id, solution.status)
            return SolveResult(status=str(solution.status))

        ranges = {}
        for name, targets in (profile_sets or {}).items():
            if not targets:
                ranges[name] = pd.DataFrame(columns=["reaction_id", "fva_min", "fva_max"])
                continue
            ranges[name] = run_targeted_fva(
                cobra_model,
                targets,
                fraction_of_optimum=self.fva_fraction,
                processes=self.processes,
            )
        return SolveResult(
            status=OPTIMAL,
            objective_value=float(solution.objective_value),
            fluxes=solution.fluxes,
            ranges=ranges,
        )
