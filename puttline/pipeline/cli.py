"""CLI entry-point for the putting pipeline."""

from __future__ import annotations

import logging
from pathlib import Path

import click
from pydantic import ValidationError

from puttline.core.settings import (
    AnalysisSettings,
    GrassType,
    GreenCondition,
    PhysicsSettings,
    SolverSettings,
)
from puttline.core.types import BallPosition, HolePosition, InsufficientDataError, Vec3
from puttline.pipeline.loader import load_mesh
from puttline.pipeline.process import analyze_mesh_file_to_json
from puttline.pipeline.reconstruct import reconstruct_surface


def _vec(values: tuple[float, float, float]) -> Vec3:
    return Vec3(x=values[0], y=values[1], z=values[2])


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log per-trial detail.")
def main(verbose: bool):
    """Golf putt analysis from captured green meshes."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s | %(name)s | %(message)s",
    )


@main.command()
@click.argument("mesh_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--ball", nargs=3, type=float, required=True, help="Ball position X Y Z (metres).")
@click.option("--hole", nargs=3, type=float, required=True, help="Hole position X Y Z (metres).")
@click.option("--stimp", type=float, default=None, help="Stimpmeter reading (feet).")
@click.option("--grass", type=click.Choice([g.value for g in GrassType]), default=None)
@click.option("--condition", type=click.Choice([c.value for c in GreenCondition]), default=None,
              help="Moisture preset.")
@click.option("--moisture", type=float, default=None, help="Moisture 0–1 (overrides --condition).")
@click.option("--grain-direction", type=float, default=None, help="Grain direction (degrees).")
@click.option("--temperature", type=float, default=None, help="Temperature (°C).")
@click.option("--altitude", type=float, default=None, help="Altitude (metres).")
@click.option("--deadline", type=float, default=None, help="Search budget (seconds).")
@click.option("--settings", "settings_file", type=click.Path(exists=True, dir_okay=False),
              default=None, help="JSON file with 'physics' and 'solver' sections.")
@click.option("-o", "--output", "output_file", default=None, help="Output JSON path.")
def analyze(
    mesh_file: str,
    ball: tuple[float, float, float],
    hole: tuple[float, float, float],
    stimp: float | None,
    grass: str | None,
    condition: str | None,
    moisture: float | None,
    grain_direction: float | None,
    temperature: float | None,
    altitude: float | None,
    deadline: float | None,
    settings_file: str | None,
    output_file: str | None,
):
    """Find putting lines on a mesh and print the analysis JSON."""
    try:
        settings = (
            AnalysisSettings.model_validate_json(Path(settings_file).read_text())
            if settings_file else AnalysisSettings()
        )
        physics = settings.physics
        if condition is not None:
            physics = physics.with_condition(GreenCondition(condition))
        overrides = {
            "stimpmeter_speed": stimp,
            "grass_type": grass,
            "moisture": moisture,
            "grain_direction_deg": grain_direction,
            "temperature_c": temperature,
            "altitude_m": altitude,
        }
        physics = PhysicsSettings.model_validate(
            {**physics.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
        )
        solver = settings.solver
        if deadline is not None:
            solver = SolverSettings.model_validate({**solver.model_dump(), "deadline": deadline})
    except ValidationError as exc:
        raise click.BadParameter(str(exc)) from exc

    try:
        json_str = analyze_mesh_file_to_json(
            mesh_file,
            BallPosition(world_position=_vec(ball)),
            HolePosition(world_position=_vec(hole)),
            output_path=output_file,
            physics=physics,
            solver=solver,
        )
    except (InsufficientDataError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json_str)


@main.command()
@click.argument("mesh_file", type=click.Path(exists=True, dir_okay=False))
def surface(mesh_file: str):
    """Reconstruct a mesh and print the surface quality summary."""
    try:
        green = reconstruct_surface([load_mesh(mesh_file)])
    except (InsufficientDataError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(green.summary().model_dump_json(indent=2))


if __name__ == "__main__":
    main()
