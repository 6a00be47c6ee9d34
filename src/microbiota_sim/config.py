from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    """Raised when a config file cannot be loaded or has invalid structure."""


def load_config(path: str | Path) -> dict[str, Any]:
    """
    Load a YAML or JSON config file into a dict.

    Parameters
    ----------
    path:
        Path to a .yaml/.yml or .json file.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    suffix = p.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    elif suffix == ".json":
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    else:
        raise ConfigError(f"Unsupported config extension: {suffix} (expected .yaml/.yml/.json)")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping/dict, got: {type(data).__name__}")
    return data


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping, got: {type(section).__name__}")
    return section


def _check_keys(cls, data: Mapping[str, Any]) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")


def _as_path(value: Any) -> Path | None:
    return None if value in (None, "") else Path(value)


@dataclass(frozen=True)
class SimulationConfig:
    """
    Settings of one simulation batch.

    Notes
    -----
    ``host`` switches the batch to host-coupled community models; it requires
    ``host_biomass_reaction``. The personalized diet scenario is experimental.
    """

    results_dir: Path
    diet_file: Path
    community_dir: Path | None = None
    host: bool = False
    host_biomass_reaction: str | None = None
    host_biomass_max_flux: float = 1.0
    n_workers: int = 1
    rich_diet: bool = False
    personalized_diet: bool = False
    personalized_diet_file: Path | None = None
    save_constrained_models: bool = False
    compute_profiles: bool = True
    include_human_metabolites: bool = True
    lower_biomass_bound: float = 0.4
    force_repeat: bool = False
    fva_fraction: float = 0.9999
    min_aggregate_flux: float | None = None
    solver: str = "glpk"
    show_progress: bool = True

    def __post_init__(self) -> None:
        if self.host and not self.host_biomass_reaction:
            raise ConfigError("host=true requires host_biomass_reaction.")
        if self.personalized_diet and self.personalized_diet_file is None:
            raise ConfigError("personalized_diet=true requires personalized_diet_file.")
        if self.n_workers < 1:
            raise ConfigError(f"n_workers must be >= 1, got {self.n_workers}")
        if not (0.0 < self.fva_fraction <= 1.0):
            raise ConfigError(f"fva_fraction must be in (0, 1], got {self.fva_fraction}")

    @property
    def models_dir(self) -> Path:
        """Where sample community models are read from."""
        return self.community_dir or self.results_dir

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SimulationConfig:
        _check_keys(cls, data)
        for key in ("results_dir", "diet_file"):
            if key not in data:
                raise ConfigError(f"Missing required simulation key: {key}")
        values = dict(data)
        for key in ("results_dir", "diet_file", "community_dir", "personalized_diet_file"):
            if key in values:
                values[key] = _as_path(values[key])
        return cls(**values)


@dataclass(frozen=True)
class AssemblyConfig:
    """Settings of the community model build step."""

    model_dir: Path
    abundance_file: Path
    output_dir: Path
    host_model_path: Path | None = None
    objective_reaction: str = "EX_biomass(e)"
    sequential_threshold: int = 500
    n_jobs: int = 1
    abundance_threshold: float = 1e-7
    merge_genes: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AssemblyConfig:
        _check_keys(cls, data)
        for key in ("model_dir", "abundance_file", "output_dir"):
            if key not in data:
                raise ConfigError(f"Missing required assembly key: {key}")
        values = dict(data)
        for key in ("model_dir", "abundance_file", "output_dir", "host_model_path"):
            if key in values:
                values[key] = _as_path(values[key])
        return cls(**values)


def load_simulation_config(path: str | Path) -> SimulationConfig:
    return SimulationConfig.from_mapping(_section(load_config(path), "simulation"))


def load_assembly_config(path: str | Path) -> AssemblyConfig:
    return AssemblyConfig.from_mapping(_section(load_config(path), "assembly"))
