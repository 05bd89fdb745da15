"""
Canopy LSM — CLI Entry Point
=============================
Exposes :class:`~canopy_lsm.pipeline.LandscapeMetricsTool` and
:class:`~canopy_lsm.pipeline.CalibrationFitTool` as the ``canopy-lsm``
command.

Usage::

    # Fit the shadow-bias calibration from simulated stands
    canopy-lsm fit models/calibration.json --trees inventory/trees.csv \\
        --scale 1 --scale 0.5 --n-samples 500 --seed 7

    # Compute calibrated metrics for one classified tile
    canopy-lsm compute tiles/m_3008901_ne_16_1.tif output/ \\
        --scale 1 --mode overlapping --step-fraction 0.5 \\
        --model models/calibration.json

Run ``canopy-lsm --help`` for the full option list.
"""

from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

import click

from shared.python.exceptions import CanopyLSMError

from canopy_lsm.config import AnalysisConfig, ScaleSpec, SimulationConfig
from canopy_lsm.pipeline import CalibrationFitTool, LandscapeMetricsTool


def _analysis_config(
    config_path: str | None,
    scales: tuple[float, ...],
    overrides: dict,
) -> AnalysisConfig:
    """Load the analysis config file (if any) and apply command-line overrides."""
    config = AnalysisConfig.from_json(Path(config_path)) if config_path else AnalysisConfig()
    if scales:
        config.scales = [ScaleSpec.from_acres(a) for a in scales]
    changes = {k: v for k, v in overrides.items() if v is not None}
    return dataclasses.replace(config, **changes)


_scale_option = click.option(
    "--scale",
    "scales",
    type=float,
    multiple=True,
    help="Window area in acres; repeat for several scales (default 1).",
)
_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with analysis options.",
)
_verbose_option = click.option("--verbose", is_flag=True, default=False, help="Enable DEBUG-level logging.")


@click.group("canopy-lsm")
def cli() -> None:
    """Shadow-bias corrected landscape structure metrics for canopy rasters."""


@cli.command("compute")
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("output_dir", type=click.Path(file_okay=False))
@_config_option
@_scale_option
@click.option(
    "--mode",
    "sampling_mode",
    type=click.Choice(["disjoint", "overlapping"]),
    default=None,
    help="Window sampling mode (default disjoint).",
)
@click.option("--step-fraction", type=float, default=None, help="Overlapping-mode step as a fraction of the window side.")
@click.option("--edge-depth", type=int, default=None, help="Core-area edge depth in cells (default 1).")
@click.option(
    "--boundary",
    "boundary_policy",
    type=click.Choice(["exclude", "flag"]),
    default=None,
    help="Partial edge windows: drop them or keep and flag them (default flag).",
)
@click.option("--workers", type=int, default=None, help="Worker threads (default 4).")
@click.option(
    "--model",
    "model_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Calibration model JSON.  Without it only observed rasters are written.",
)
@_verbose_option
def compute(
    input_path: str,
    output_dir: str,
    config_path: str | None,
    scales: tuple[float, ...],
    sampling_mode: str | None,
    step_fraction: float | None,
    edge_depth: int | None,
    boundary_policy: str | None,
    workers: int | None,
    model_path: str | None,
    verbose: bool,
) -> None:
    """Compute landscape metrics of INPUT_PATH into OUTPUT_DIR.

    \b
    Examples:
        canopy-lsm compute tile.tif output/
        canopy-lsm compute tile.tif output/ --scale 1 --scale 0.25 \\
            --mode overlapping --step-fraction 0.5 --model calibration.json
    """
    try:
        config = _analysis_config(
            config_path,
            scales,
            {
                "sampling_mode": sampling_mode,
                "step_fraction": step_fraction,
                "edge_depth": edge_depth,
                "boundary_policy": boundary_policy,
                "workers": workers,
            },
        )
        tool = LandscapeMetricsTool(
            Path(input_path),
            Path(output_dir),
            config,
            model_path=Path(model_path) if model_path else None,
            verbose=verbose,
        )
        tool.run()
    except CanopyLSMError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)

    click.echo(f"\nMetric rasters written to: {output_dir}")
    for result in tool.results:
        click.echo(f"  {result}")
        for path in result.output_paths:
            click.echo(f"    {path.name}")


@cli.command("fit")
@click.argument("output_path", type=click.Path(dir_okay=False))
@_config_option
@click.option(
    "--simulation-config",
    "simulation_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with simulation options.",
)
@click.option(
    "--trees",
    "tree_table",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Inventory tree CSV to fit the stem and diameter distributions from.",
)
@_scale_option
@click.option("--n-samples", type=int, default=None, help="Simulated stands per scale (default 500).")
@click.option("--seed", type=int, default=None, help="Random seed (default 0).")
@click.option("--cell-size", type=float, default=None, help="Simulated cell size in metres (default 1).")
@_verbose_option
def fit(
    output_path: str,
    config_path: str | None,
    simulation_path: str | None,
    tree_table: str | None,
    scales: tuple[float, ...],
    n_samples: int | None,
    seed: int | None,
    cell_size: float | None,
    verbose: bool,
) -> None:
    """Simulate stands and fit the calibration model to OUTPUT_PATH (JSON).

    \b
    Examples:
        canopy-lsm fit calibration.json --n-samples 200
        canopy-lsm fit calibration.json --trees trees.csv --scale 1 --scale 0.5
    """
    try:
        analysis = _analysis_config(config_path, scales, {})
        simulation = SimulationConfig.from_json(Path(simulation_path)) if simulation_path else SimulationConfig()
        changes = {"n_samples": n_samples, "seed": seed, "cell_size": cell_size}
        simulation = dataclasses.replace(simulation, **{k: v for k, v in changes.items() if v is not None})
        tool = CalibrationFitTool(
            Path(output_path),
            analysis,
            simulation,
            tree_table=Path(tree_table) if tree_table else None,
            verbose=verbose,
        )
        tool.run()
    except CanopyLSMError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)

    assert tool.model is not None
    click.echo(f"\nCalibration model written to: {output_path}")
    for scale_label in tool.model.scales:
        n_failed = len(tool.model.failures.get(scale_label, {}))
        click.echo(
            f"  {scale_label}: {len(tool.model.regressions[scale_label])} metric(s) fitted, {n_failed} failed"
        )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
