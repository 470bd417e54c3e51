"""End-to-end pipeline: mesh fragments + ball/hole → putt analysis JSON."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, Optional

from puttline.core.settings import PhysicsSettings, SolverSettings
from puttline.core.types import (
    AnalysisStatus,
    BallPosition,
    HolePosition,
    MeshFragment,
    PuttAnalysis,
    PuttingStrategy,
    Vec3,
)
from puttline.pipeline.loader import load_mesh
from puttline.pipeline.physics import derive_physics_parameters
from puttline.pipeline.reconstruct import filter_to_radius, reconstruct_surface
from puttline.pipeline.slope import build_slope_data
from puttline.pipeline.solver import CancellationToken, PuttSolver, straight_line

logger = logging.getLogger(__name__)

_NO_FALLBACK = (
    AnalysisStatus.CANCELLED,
    AnalysisStatus.INSUFFICIENT_DATA,
    AnalysisStatus.DEGENERATE_INPUT,
)


def analyze_putt(
    fragments: Iterable[MeshFragment],
    ball: BallPosition,
    hole: HolePosition,
    *,
    physics: Optional[PhysicsSettings] = None,
    solver: Optional[SolverSettings] = None,
    token: Optional[CancellationToken] = None,
    filter_margin: float = 1.0,
) -> PuttAnalysis:
    """Run the full analysis for one putt.

    1. Reconstruct the green from the fragments.
    2. Crop it to the region around the ball and the hole.
    3. Build the slope field.
    4. Derive physics parameters from the settings.
    5. Search for putting lines.

    Raises :class:`~puttline.core.types.InsufficientDataError` when the
    fragments do not yield a surface.
    """
    started = time.monotonic()
    surface = reconstruct_surface(fragments)

    a, b = ball.world_position, hole.world_position
    distance = a.horizontal_distance(b)
    center = Vec3(x=(a.x + b.x) / 2, y=(a.y + b.y) / 2, z=(a.z + b.z) / 2)
    surface = filter_to_radius(surface, center, distance / 2 + filter_margin)

    slope_data = build_slope_data(surface)
    parameters = derive_physics_parameters(physics)
    logger.info(
        "Physics: μ=%.4f, g=%.4f, grass=%s",
        parameters.friction_coefficient, parameters.gravity, parameters.grass_type.value,
    )

    analysis = PuttSolver(settings=solver).find_putting_lines(
        ball, hole, surface, slope_data, parameters, token=token
    )
    if not analysis.lines and analysis.status not in _NO_FALLBACK:
        logger.warning("Solver returned no line, using a straight-line estimate")
        analysis.lines[PuttingStrategy.OPTIMAL] = straight_line(ball, hole, parameters)

    analysis.surface = surface.summary()
    analysis.elapsed = time.monotonic() - started
    return analysis


def analyze_mesh_file(
    input_path: str | Path,
    ball: BallPosition,
    hole: HolePosition,
    **kwargs,
) -> PuttAnalysis:
    """Load a mesh file and analyse one putt on it."""
    input_path = Path(input_path)
    logger.info("Loading %s …", input_path.name)
    fragment = load_mesh(input_path)
    return analyze_putt([fragment], ball, hole, **kwargs)


def analyze_mesh_file_to_json(
    input_path: str | Path,
    ball: BallPosition,
    hole: HolePosition,
    output_path: str | Path | None = None,
    **kwargs,
) -> str:
    """Run the analysis and write it to a JSON file.

    Returns the JSON string.
    """
    analysis = analyze_mesh_file(input_path, ball, hole, **kwargs)
    json_str = analysis.model_dump_json(indent=2)

    if output_path is None:
        output_path = Path(input_path).with_suffix(".putt.json")
    Path(output_path).write_text(json_str)
    logger.info("Wrote putt analysis → %s", output_path)
    return json_str
