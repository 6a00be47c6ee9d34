from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import pandas as pd

from microbiota_sim.diet import DietScenario
from microbiota_sim.model import Model

logger = logging.getLogger(__name__)

MODEL_SUFFIXES: tuple[str, ...] = (".json", ".xml", ".sbml", ".mat")


def load_model(path: str | Path) -> Model:
    """
    Load a model file with cobra and convert it; reaction roles are assigned here.

    Supported: .json, .xml/.sbml, .mat
    """
    from cobra.io import load_json_model, load_matlab_model, read_sbml_model

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Model file not found: {p}")
    suffix = p.suffix.lower()
    readers = {".json": load_json_model, ".xml": read_sbml_model, ".sbml": read_sbml_model, ".mat": load_matlab_model}
    if suffix not in readers:
        raise ValueError(f"Unsupported model format: {suffix} (expected one of {', '.join(MODEL_SUFFIXES)})")
    logger.debug("Loading model: %s", p)
    return Model.from_cobra(readers[suffix](str(p)))


def save_model(model: Model, path: str | Path) -> Path:
    from cobra.io import save_json_model, save_matlab_model, write_sbml_model

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    suffix = p.suffix.lower()
    writers = {".json": save_json_model, ".xml": write_sbml_model, ".sbml": write_sbml_model, ".mat": save_matlab_model}
    if suffix not in writers:
        raise ValueError(f"Unsupported model format: {suffix} (expected one of {', '.join(MODEL_SUFFIXES)})")
    writers[suffix](model.to_cobra(), str(p))
    logger.info("Saved model: %s (mets=%d, rxns=%d)", p, model.n_metabolites, model.n_reactions)
    return p


def community_model_name(sample_id: str, host: bool = False) -> str:
    name = f"microbiota_model_samp_{sample_id}"
    return f"host_{name}" if host else name


class ModelStore:
    """
    File layout for organism, community and constrained models.

    Parameters
    ----------
    root:
        Directory holding community models (and the Rich/Diet/Personalized
        sub-directories of constrained models).
    organism_dir:
        Directory holding one organism model per file, named after the organism.
    """

    def __init__(self, root: str | Path, organism_dir: str | Path | None = None, fmt: str = ".json") -> None:
        self.root = Path(root)
        self.organism_dir = Path(organism_dir) if organism_dir is not None else None
        self.fmt = fmt if fmt.startswith(".") else f".{fmt}"

    def organism_path(self, name: str) -> Path:
        if self.organism_dir is None:
            raise ValueError("ModelStore has no organism_dir.")
        for suffix in MODEL_SUFFIXES:
            p = self.organism_dir / f"{name}{suffix}"
            if p.exists():
                return p
        raise FileNotFoundError(f"No model file for organism {name!r} in {self.organism_dir}")

    def load_organism(self, name: str) -> Model:
        return load_model(self.organism_path(name))

    def community_path(self, sample_id: str, host: bool = False) -> Path:
        return self.root / f"{community_model_name(sample_id, host)}{self.fmt}"

    def load_community(self, sample_id: str, host: bool = False) -> Model:
        return load_model(self.community_path(sample_id, host))

    def save_community(self, model: Model, sample_id: str, host: bool = False) -> Path:
        return save_model(model, self.community_path(sample_id, host))

    def save_constrained(self, model: Model, sample_id: str, scenario: DietScenario | str) -> Path:
        scenario = DietScenario(scenario)
        return save_model(model, self.root / scenario.model_dir / f"microbiota_model_{scenario.value}_{sample_id}{self.fmt}")


def load_abundance_table(path: str | Path) -> pd.DataFrame:
    """
    Load an organism x sample abundance table (CSV, first column = organism name).

    Non-numeric cells become 0.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Abundance file not found: {p}")
    df = pd.read_csv(p, index_col=0)
    df.index = df.index.astype(str).str.strip()
    df.columns = [str(c).strip() for c in df.columns]
    dup = df.index[df.index.duplicated()].unique().tolist()
    if dup:
        raise ValueError(f"Duplicate organisms in abundance table: {dup[:10]}")
    df = df.apply(pd.to_numeric, errors="coerce").fillna(0.0)
    logger.info("Loaded abundance table: %s (organisms=%d, samples=%d)", p, df.shape[0], df.shape[1])
    return df


def load_sample_ids(path: str | Path) -> list[str]:
    """One sample id per line; blank lines and '#' comments are ignored."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Sample list not found: {p}")
    lines = (line.strip() for line in p.read_text(encoding="utf-8").splitlines())
    return [line for line in lines if line and not line.startswith("#")]


def save_table(
    df: pd.DataFrame,
    out_path: str | Path,
    *,
    fmt: Literal["parquet", "csv"] | None = None,
    index: bool = False,
) -> Path:
    """
    Save a table to parquet or CSV, inferred by extension unless fmt is provided.
    """
    p = Path(out_path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if fmt is None:
        suffix = p.suffix.lower()
        if suffix == ".parquet":
            fmt = "parquet"
        elif suffix == ".csv":
            fmt = "csv"
        else:
            raise ValueError(f"Cannot infer format from extension: {p.suffix} (use .parquet or .csv)")

    if fmt == "parquet":
        df.to_parquet(p, index=index)
    elif fmt == "csv":
        df.to_csv(p, index=index)
    else:
        raise ValueError(f"Unsupported fmt: {fmt}")

    logger.info("Saved table: %s (rows=%d, cols=%d)", p, len(df), len(df.columns))
    return p
