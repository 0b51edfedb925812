from __future__ import annotations
from typing import Optional, List, Dict
import json
import typer
from pathlib import Path
import warnings

from .config import PipelineConfig, analysis_defaults, STEP_PARAMETERS
from .pipeline import run_pipeline
import logging
from .logging_utils import init_logging, LEVELS


app = typer.Typer(help="sckana CLI: incremental single-cell analysis (QC to markers) with reusable results.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*n_jobs value.*overridden.*", category=UserWarning, module="umap")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_datasets(entries: List[str]) -> Dict[str, Path]:
    """
    Parse repeated ``--dataset NAME=PATH`` options. A bare PATH is named
    after its file stem.
    """
    datasets: Dict[str, Path] = {}
    for entry in entries:
        if "=" in entry:
            name, _, path = entry.partition("=")
            name = name.strip()
        else:
            path = entry
            name = Path(entry).stem
        if not name or not path:
            raise typer.BadParameter(f"Malformed dataset '{entry}'. Use NAME=PATH.")
        if name in datasets:
            raise typer.BadParameter(f"Dataset name '{name}' given more than once.")
        datasets[name] = Path(path)
    return datasets


# ======================================================================
#  run
# ======================================================================
@app.command("run", help="Run the full analysis and save the results bundle.")
def run(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    dataset: List[str] = typer.Option(
        ..., "--dataset", "-d",
        help="[I/O] NAME=PATH of an .h5ad, 10x .h5 or 10x MatrixMarket directory. Repeat for multiple datasets.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for the results bundle.",
    ),
    output_name: str = typer.Option(
        "analysis",
        "--name",
        help="[I/O] Name of the saved experiment.",
    ),
    parameters_json: Optional[Path] = typer.Option(
        None, "--params", "-p", exists=True,
        help="[I/O] JSON file of per-step parameters; missing steps use defaults.",
    ),
    report_one_index: bool = typer.Option(
        False,
        "--one-index/--zero-index",
        help="[I/O] Report custom selection indices from 1.",
    ),
    write_genewise: bool = typer.Option(
        True,
        "--genewise/--no-genewise",
        help="[I/O] Also write per-gene CSV tables.",
    ),

    # -------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        help=f"[Logging] One of {', '.join(LEVELS)}.",
    ),
):
    if log_level.upper() not in LEVELS:
        raise typer.BadParameter(f"--log-level must be one of {', '.join(LEVELS)}")

    datasets = _parse_datasets(dataset)

    logfile = output_dir / f"{output_name}.log"
    init_logging(logfile, level=log_level)
    logging.getLogger(__name__).info("Logging initialized")

    cfg = PipelineConfig(
        datasets=datasets,
        parameters_json=parameters_json,
        output_dir=output_dir,
        output_name=output_name,
        report_one_index=report_one_index,
        write_genewise=write_genewise,
        logfile=logfile,
    )

    run_pipeline(cfg)


# ======================================================================
#  defaults
# ======================================================================
@app.command("defaults", help="Print the default parameters of every step as JSON.")
def defaults(
    step: Optional[List[str]] = typer.Option(
        None, "--step", "-s",
        help="Only print these steps.",
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o",
        help="Write to this file instead of stdout.",
    ),
):
    params = analysis_defaults()
    if step:
        unknown = [s for s in step if s not in STEP_PARAMETERS]
        if unknown:
            raise typer.BadParameter(
                f"Unknown step(s): {', '.join(unknown)}. Available: {', '.join(STEP_PARAMETERS)}"
            )
        params = {s: params[s] for s in step}

    text = json.dumps(params, indent=2)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text + "\n")
    else:
        typer.echo(text)


if __name__ == "__main__":
    app()
