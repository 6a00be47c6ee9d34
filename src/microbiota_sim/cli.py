from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler

from microbiota_sim import __version__
from microbiota_sim.assembly import AssemblyError, build_sample_models
from microbiota_sim.checkpoint import CheckpointError
from microbiota_sim.config import ConfigError, load_assembly_config, load_simulation_config
from microbiota_sim.diet import DietError
from microbiota_sim.fva import FVAError
from microbiota_sim.io import ModelStore, load_abundance_table, load_sample_ids, save_table
from microbiota_sim.model import ModelStructureError
from microbiota_sim.simulate import SimulationDriver
from microbiota_sim.tables import TableError, objective_table, results_long_table, results_wide_table

app = typer.Typer(add_completion=False, help="microbiota_sim: community model assembly + diet simulations")

logger = logging.getLogger(__name__)

TABLE_FORMATS = ("csv", "parquet")

_HANDLED = (
    AssemblyError,
    CheckpointError,
    ConfigError,
    DietError,
    FileNotFoundError,
    FVAError,
    ModelStructureError,
    TableError,
)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_time=False, show_path=False)],
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging."),
) -> None:
    """Entry point."""
    _setup_logging(verbose=verbose)


@app.command()
def version() -> None:
    """Print package version."""
    typer.echo(__version__)


@app.command()
def build(
    config: Path = typer.Option(..., "--config", "-c", help="YAML/JSON config with an 'assembly' section."),
    sample: Optional[List[str]] = typer.Option(None, "--sample", "-s", help="Sample id (repeatable). Default: all."),
) -> None:
    """Build one community model per sample of the abundance table."""
    try:
        cfg = load_assembly_config(config)
        store = ModelStore(cfg.output_dir, organism_dir=cfg.model_dir)
        written = build_sample_models(cfg, store, sample_ids=sample or None)
    except _HANDLED as e:
        logger.error("%s", e)
        raise typer.Exit(code=2) from e
    typer.echo(f"Built {len(written)} community models in {cfg.output_dir}")


@app.command()
def simulate(
    config: Path = typer.Option(..., "--config", "-c", help="YAML/JSON config with a 'simulation' section."),
    sample: Optional[List[str]] = typer.Option(None, "--sample", "-s", help="Sample id (repeatable)."),
    samples_file: Optional[Path] = typer.Option(None, "--samples-file", help="File with one sample id per line."),
    abundance_file: Optional[Path] = typer.Option(
        None, "--abundance-file", help="Take the sample ids from the columns of this abundance table."
    ),
    force_repeat: bool = typer.Option(False, "--force-repeat", help="Ignore existing checkpoints."),
    tables_format: str = typer.Option("csv", "--tables-format", help="Result table format: csv or parquet."),
) -> None:
    """Run the diet simulations for a batch of samples."""
    try:
        if tables_format not in TABLE_FORMATS:
            raise ConfigError(f"--tables-format must be one of {', '.join(TABLE_FORMATS)}, got {tables_format!r}")
        cfg = load_simulation_config(config)
        if force_repeat:
            cfg = replace(cfg, force_repeat=True)

        sample_ids = list(sample or [])
        if samples_file is not None:
            sample_ids.extend(load_sample_ids(samples_file))
        if abundance_file is not None:
            sample_ids.extend(str(c) for c in load_abundance_table(abundance_file).columns)
        sample_ids = list(dict.fromkeys(sample_ids))
        if not sample_ids:
            raise ConfigError("No samples given (use --sample, --samples-file or --abundance-file).")

        state = SimulationDriver(cfg).run(sample_ids)

        long_df = results_long_table(state)
        save_table(long_df, cfg.results_dir / f"net_fluxes.{tables_format}")
        save_table(results_wide_table(long_df), cfg.results_dir / f"net_production_wide.{tables_format}")
        save_table(objective_table(state), cfg.results_dir / f"objectives.{tables_format}")
    except _HANDLED as e:
        logger.error("%s", e)
        raise typer.Exit(code=2) from e

    infeasible = state.infeasible()
    typer.echo(
        f"Simulated {len(sample_ids)} samples; infeasible: "
        + (", ".join(f"{k}={len(v)}" for k, v in infeasible.items()) or "none")
    )


if __name__ == "__main__":
    app()
