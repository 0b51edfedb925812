from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .analysis import create_analysis, free_analysis, retrieve_parameters, run_analysis
from .config import PipelineConfig
from .export import save_genewise_results, save_single_cell_experiment
from .io_utils import DatasetHandle, dataset_from_path

LOGGER = logging.getLogger(__name__)


def load_parameters(cfg: PipelineConfig) -> Optional[Dict[str, Any]]:
    if cfg.parameters_json is None:
        return None
    with open(cfg.parameters_json) as fh:
        params = json.load(fh)
    if not isinstance(params, dict):
        raise ValueError(f"{cfg.parameters_json} must hold a JSON object keyed by step name")
    LOGGER.info("Loaded parameters for %d step(s) from %s", len(params), cfg.parameters_json)
    return params


def open_datasets(cfg: PipelineConfig) -> Dict[str, DatasetHandle]:
    datasets = {}
    for name, path in cfg.datasets.items():
        datasets[name] = dataset_from_path(path)
        LOGGER.info("Dataset '%s': %s (%s)", name, path, datasets[name].format())
    return datasets


def _log_start(step: str) -> None:
    LOGGER.debug("Starting %s", step)


def _log_finish(step: str, state=None) -> None:
    if state is None:
        LOGGER.debug("%s reused cached results", step)
    else:
        LOGGER.debug("%s produced new results", step)


def run_pipeline(cfg: PipelineConfig) -> Dict[str, List]:
    """
    Run one full analysis from the command line: read the datasets, run
    every step, wait for the embeddings and write the results bundle.
    """
    LOGGER.info("Starting analysis '%s'", cfg.output_name)
    parameters = load_parameters(cfg)
    datasets = open_datasets(cfg)

    state = create_analysis()
    try:
        pending = run_analysis(state, datasets, parameters, start_fun=_log_start, finish_fun=_log_finish)
        for kind, fut in pending.items():
            fut.result()
            LOGGER.info("%s embedding ready", kind)

        cfg.output_dir.mkdir(parents=True, exist_ok=True)
        files = save_single_cell_experiment(
            state, cfg.output_name, cfg.output_dir, report_one_index=cfg.report_one_index
        )

        tables = []
        if cfg.write_genewise:
            tables = save_genewise_results(state, cfg.genewise_dir.name, cfg.output_dir)

        used = cfg.output_dir / f"{cfg.output_name}_parameters.json"
        with open(used, "w") as fh:
            json.dump(retrieve_parameters(state), fh, indent=2, default=str)
            fh.write("\n")
        LOGGER.info("Wrote parameters to %s", used)
    finally:
        free_analysis(state)

    LOGGER.info("Finished analysis '%s'", cfg.output_name)
    return {"files": files, "genewise": tables}
