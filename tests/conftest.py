"""Shared test fixtures – synthetic green meshes."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import numpy as np
import pytest
from plyfile import PlyData, PlyElement

from puttline.core.types import BallPosition, GreenSurface, HolePosition, MeshFragment, Vec3
from puttline.pipeline.reconstruct import compute_bounds, compute_vertex_normals


def grid_mesh(
    x_range: tuple[float, float],
    z_range: tuple[float, float],
    spacing: float = 0.1,
    height: Callable[[np.ndarray, np.ndarray], np.ndarray] | None = None,
    noise: float = 0.0,
    rng: np.random.Generator | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Regular triangulated grid in the X/Z plane; Y from *height*(x, z)."""
    xs = np.arange(x_range[0], x_range[1] + spacing / 2, spacing)
    zs = np.arange(z_range[0], z_range[1] + spacing / 2, spacing)
    gx, gz = np.meshgrid(xs, zs, indexing="ij")
    gy = height(gx, gz) if height is not None else np.zeros_like(gx)
    if noise:
        rng = rng or np.random.default_rng(0)
        gy = gy + rng.normal(scale=noise, size=gy.shape)
    vertices = np.column_stack((gx.ravel(), gy.ravel(), gz.ravel()))

    nx, nz = len(xs), len(zs)
    i, j = np.meshgrid(np.arange(nx - 1), np.arange(nz - 1), indexing="ij")
    a = (i * nz + j).ravel()
    # Counter-clockwise seen from +Y
    tris = np.concatenate([
        np.column_stack((a, a + 1, a + nz)),
        np.column_stack((a + 1, a + nz + 1, a + nz)),
    ])
    return vertices, tris


def grid_fragment(*args, **kwargs) -> MeshFragment:
    vertices, tris = grid_mesh(*args, **kwargs)
    return MeshFragment(vertices=vertices, triangles=tris)


def grid_surface(*args, **kwargs) -> GreenSurface:
    """A GreenSurface straight from the grid (no welding or smoothing)."""
    vertices, tris = grid_mesh(*args, **kwargs)
    return GreenSurface(
        vertices=vertices,
        triangles=tris,
        normals=compute_vertex_normals(vertices, tris),
        bounding_box=compute_bounds(vertices),
        quality_score=1.0,
    )


def ball_at(x: float, y: float, z: float) -> BallPosition:
    return BallPosition(world_position=Vec3(x=x, y=y, z=z))


def hole_at(x: float, y: float, z: float) -> HolePosition:
    return HolePosition(world_position=Vec3(x=x, y=y, z=z))


@pytest.fixture()
def flat_surface() -> GreenSurface:
    """3 m × 6 m flat green around the +Z axis."""
    return grid_surface((-1.5, 1.5), (-1.0, 5.0), 0.1)


@pytest.fixture()
def uphill_surface() -> GreenSurface:
    """Rises 3 % toward +Z."""
    return grid_surface((-1.5, 1.5), (-1.0, 5.0), 0.1, height=lambda x, z: 0.03 * z)


@pytest.fixture()
def downhill_surface() -> GreenSurface:
    """Falls 3 % toward +Z."""
    return grid_surface((-1.5, 1.5), (-1.0, 5.0), 0.1, height=lambda x, z: -0.03 * z)


@pytest.fixture()
def side_slope_surface() -> GreenSurface:
    """Falls 3 % toward −X, so a putt along +Z breaks toward −X."""
    return grid_surface((-1.5, 1.5), (-1.0, 5.0), 0.1, height=lambda x, z: 0.03 * x)


@pytest.fixture()
def wide_flat_surface() -> GreenSurface:
    """12 m × 12 m flat green centred on the origin, for stimpmeter rolls."""
    return grid_surface((-6.0, 6.0), (-6.0, 6.0), 0.25)


def write_ply(target, vertices: np.ndarray, faces, normals=None, classifications=None) -> None:
    """Write a mesh as binary PLY to a path or a binary buffer."""
    dtype = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    if normals is not None:
        dtype += [("nx", "f4"), ("ny", "f4"), ("nz", "f4")]
    vert = np.empty(len(vertices), dtype=dtype)
    vert["x"], vert["y"], vert["z"] = vertices[:, 0], vertices[:, 1], vertices[:, 2]
    if normals is not None:
        vert["nx"], vert["ny"], vert["nz"] = normals[:, 0], normals[:, 1], normals[:, 2]

    face_dtype = [("vertex_indices", "i4", (len(faces[0]),))]
    if classifications is not None:
        face_dtype.append(("classification", "u1"))
    face = np.empty(len(faces), dtype=face_dtype)
    face["vertex_indices"] = np.asarray(faces)
    if classifications is not None:
        face["classification"] = classifications

    elements = [PlyElement.describe(vert, "vertex"), PlyElement.describe(face, "face")]
    data = PlyData(elements, text=False)
    if isinstance(target, Path):
        data.write(str(target))
    else:
        data.write(target)
