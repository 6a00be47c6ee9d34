from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from microbiota_sim.diet import DietScenario

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
INTERMEDIATE_FILE = "intermediate_results.json"
FINAL_FILE = "simulation_results.json"

# fecal exchange id -> (diet flux, fecal flux)
FluxTable = dict[str, tuple[float, float]]


class CheckpointError(RuntimeError):
    """Raised when a checkpoint file cannot be read or written."""


@dataclass
class SampleResult:
    """
    Per-sample outcome across diet scenarios.

    net_production[scenario][fecal_id] = (min diet flux, max fecal flux)
    net_uptake[scenario][fecal_id] = (max diet flux, min fecal flux)
    """

    sample_id: str
    objective: dict[str, float | None] = field(default_factory=dict)
    feasible: dict[str, bool] = field(default_factory=dict)
    net_production: dict[str, FluxTable] = field(default_factory=dict)
    net_uptake: dict[str, FluxTable] = field(default_factory=dict)
    completed: bool = False

    def record_infeasible(self, scenario: DietScenario | str) -> None:
        key = DietScenario(scenario).value
        self.feasible[key] = False
        self.objective[key] = None

    def record_solution(
        self,
        scenario: DietScenario | str,
        objective: float,
        net_production: FluxTable | None = None,
        net_uptake: FluxTable | None = None,
    ) -> None:
        key = DietScenario(scenario).value
        self.feasible[key] = True
        self.objective[key] = float(objective)
        if net_production is not None:
            self.net_production[key] = dict(net_production)
        if net_uptake is not None:
            self.net_uptake[key] = dict(net_uptake)

    def is_trustworthy(
        self,
        compute_profiles: bool,
        min_aggregate_flux: float | None = None,
        scenarios: Iterable[DietScenario | str] = (),
    ) -> bool:
        """
        Whether a reloaded result can be kept instead of re-simulated.

        Requires the completion marker and an outcome for every scenario in
        ``scenarios`` (the ones enabled for this run). With profiles, every
        feasible scenario must also have a net production table, and
        optionally the absolute sum of its diet fluxes must exceed
        ``min_aggregate_flux``.
        """
        if not self.completed:
            return False
        if any(DietScenario(s).value not in self.feasible for s in scenarios):
            return False
        if not compute_profiles:
            return True
        for scenario, ok in self.feasible.items():
            if not ok:
                continue
            if scenario not in self.net_production:
                return False
            if min_aggregate_flux is not None:
                table = self.net_production[scenario]
                total = abs(sum(diet for diet, _ in table.values()))
                if total <= min_aggregate_flux:
                    return False
        return True


@dataclass
class SimulationState:
    """All sample results of a batch plus the resume position."""

    samples: dict[str, SampleResult] = field(default_factory=dict)
    last_completed_index: int = -1

    def get(self, sample_id: str) -> SampleResult:
        if sample_id not in self.samples:
            self.samples[sample_id] = SampleResult(sample_id=sample_id)
        return self.samples[sample_id]

    def record(self, result: SampleResult, index: int | None = None) -> None:
        self.samples[result.sample_id] = result
        if index is not None and result.completed:
            self.last_completed_index = max(self.last_completed_index, index)

    def infeasible(self) -> dict[str, list[str]]:
        """scenario -> sample ids recorded as infeasible"""
        out: dict[str, list[str]] = {}
        for sid, r in self.samples.items():
            for scenario, ok in r.feasible.items():
                if not ok:
                    out.setdefault(scenario, []).append(sid)
        return out

    def to_dict(self) -> dict[str, Any]:
        def _tables(attr: str) -> dict[str, dict[str, dict[str, list[float]]]]:
            return {
                sid: {sc: {rid: list(v) for rid, v in t.items()} for sc, t in getattr(r, attr).items()}
                for sid, r in self.samples.items()
            }

        return {
            "version": CHECKPOINT_VERSION,
            "lastCompletedSampleIndex": self.last_completed_index,
            "completed": {sid: r.completed for sid, r in self.samples.items()},
            "presol": {sid: dict(r.objective) for sid, r in self.samples.items()},
            "inFesMat": self.infeasible(),
            "feasible": {sid: dict(r.feasible) for sid, r in self.samples.items()},
            "netProduction": _tables("net_production"),
            "netUptake": _tables("net_uptake"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SimulationState:
        try:
            completed = data.get("completed", {})
            presol = data.get("presol", {})
            feasible = data.get("feasible", {})
            production = data.get("netProduction", {})
            uptake = data.get("netUptake", {})
            sample_ids = list(dict.fromkeys([*completed, *presol, *production, *uptake]))

            samples = {}
            for sid in sample_ids:
                objective = dict(presol.get(sid, {}))
                samples[sid] = SampleResult(
                    sample_id=sid,
                    objective=objective,
                    feasible=dict(feasible.get(sid, {sc: v is not None for sc, v in objective.items()})),
                    net_production={
                        sc: {rid: (float(v[0]), float(v[1])) for rid, v in t.items()}
                        for sc, t in production.get(sid, {}).items()
                    },
                    net_uptake={
                        sc: {rid: (float(v[0]), float(v[1])) for rid, v in t.items()}
                        for sc, t in uptake.get(sid, {}).items()
                    },
                    completed=bool(completed.get(sid, False)),
                )
            return cls(samples=samples, last_completed_index=int(data.get("lastCompletedSampleIndex", -1)))
        except (AttributeError, IndexError, TypeError, ValueError) as e:
            raise CheckpointError(f"Malformed checkpoint: {e}") from e


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write to a temp file in the same directory, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=1)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class CheckpointStore:
    """
    JSON checkpoints in a results directory.

    intermediate_results.json is rewritten after every sample,
    simulation_results.json once the batch has finished.
    """

    def __init__(self, results_dir: str | Path) -> None:
        self.results_dir = Path(results_dir)

    @property
    def intermediate_path(self) -> Path:
        return self.results_dir / INTERMEDIATE_FILE

    @property
    def final_path(self) -> Path:
        return self.results_dir / FINAL_FILE

    def _read(self, path: Path) -> SimulationState | None:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CheckpointError(f"Cannot read checkpoint {path}: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointError(f"Checkpoint {path} must contain a mapping, got {type(data).__name__}")
        return SimulationState.from_dict(data)

    def load(self) -> SimulationState:
        """
        Combine the final and intermediate checkpoints.

        Completed samples from the intermediate file (newer) replace those of
        the final file; incomplete entries never replace completed ones.
        """
        state = SimulationState()
        for path in (self.final_path, self.intermediate_path):
            loaded = self._read(path)
            if loaded is None:
                continue
            logger.info("Loaded checkpoint: %s (%d samples)", path, len(loaded.samples))
            for sid, result in loaded.samples.items():
                current = state.samples.get(sid)
                if current is None or result.completed or not current.completed:
                    state.samples[sid] = result
            state.last_completed_index = max(state.last_completed_index, loaded.last_completed_index)
        return state

    def save_intermediate(self, state: SimulationState) -> Path:
        _write_json_atomic(self.intermediate_path, state.to_dict())
        logger.debug("Saved checkpoint: %s", self.intermediate_path)
        return self.intermediate_path

    def save_final(self, state: SimulationState) -> Path:
        _write_json_atomic(self.final_path, state.to_dict())
        logger.info("Saved results: %s (%d samples)", self.final_path, len(state.samples))
        return self.final_path
