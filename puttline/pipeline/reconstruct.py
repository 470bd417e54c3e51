"""Surface reconstruction: raw mesh fragments → one stitched GreenSurface.

Fragments arrive in their own local frames, overlap at the seams and carry
LiDAR depth jitter.  This module moves them into world space, keeps only the
ground-facing triangles, welds coincident vertices on a 1 mm grid, smooths
the result and recomputes normals from the smoothed geometry.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
from scipy import sparse

from puttline.core.types import (
    BBox,
    GreenSurface,
    InsufficientDataError,
    MeshClassification,
    MeshFragment,
    Vec3,
)

logger = logging.getLogger(__name__)

UP_THRESHOLD = 0.7        # |cos| to the up axis, ≈45°
WELD_PRECISION = 1000.0   # 1 mm grid
_GROUND_LABELS = (int(MeshClassification.NONE), int(MeshClassification.FLOOR))
_UP = np.array([0.0, 1.0, 0.0])


# ── geometry helpers ──────────────────────────────────────────────────

def compute_bounds(points: np.ndarray) -> BBox:
    """Return the axis-aligned bounding box of an (N, 3) point array."""
    if len(points) == 0:
        zero = Vec3(x=0.0, y=0.0, z=0.0)
        return BBox(min=zero, max=zero)
    mins = points.min(axis=0)
    maxs = points.max(axis=0)
    return BBox(
        min=Vec3(x=float(mins[0]), y=float(mins[1]), z=float(mins[2])),
        max=Vec3(x=float(maxs[0]), y=float(maxs[1]), z=float(maxs[2])),
    )


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """Unit rows; zero-length rows become +Y."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    out = np.tile(_UP, (len(vectors), 1))
    ok = norms[:, 0] > 1e-12
    out[ok] = vectors[ok] / norms[ok]
    return out


def compute_vertex_normals(vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted vertex normals, oriented upward.

    Each face contributes its raw cross product (length = twice its area).
    Degenerate faces are skipped; vertices with no contributing face get +Y.
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    normals = np.zeros_like(vertices)
    if len(triangles) == 0:
        return _normalize_rows(normals)

    v0 = vertices[triangles[:, 0]]
    face = np.cross(vertices[triangles[:, 1]] - v0, vertices[triangles[:, 2]] - v0)
    ok = np.linalg.norm(face, axis=1) > 1e-12
    face = face[ok]
    face[face[:, 1] < 0] *= -1.0
    for corner in range(3):
        np.add.at(normals, triangles[ok, corner], face)
    return _normalize_rows(normals)


def quality_score(vertex_count: int, bounds: BBox) -> float:
    """0.6 · density term + 0.4 · coverage term, both saturating."""
    area = bounds.area
    density = vertex_count / max(area, 0.1)
    return 0.6 * min(density / 1000.0, 1.0) + 0.4 * min(area / 10.0, 1.0)


# ── per-fragment work ─────────────────────────────────────────────────

def transform_fragment(fragment: MeshFragment) -> tuple[np.ndarray, np.ndarray]:
    """Return world-space ``(vertices, normals)`` for one fragment."""
    m = fragment.transform
    local = fragment.vertices
    world = local @ m[:3, :3].T + m[:3, 3]
    if fragment.normals is not None:
        normals = _normalize_rows(fragment.normals @ m[:3, :3].T)
    else:
        normals = compute_vertex_normals(world, _valid_triangles(fragment))
    return world, normals


def _valid_triangles(fragment: MeshFragment) -> np.ndarray:
    tris = fragment.triangles
    n = len(fragment.vertices)
    in_range = np.all((tris >= 0) & (tris < n), axis=1)
    return tris[in_range]


def _ground_mask(fragment: MeshFragment, normals: np.ndarray) -> np.ndarray:
    """Triangles that are in range, ground-labelled and facing up."""
    tris = fragment.triangles
    n = len(fragment.vertices)
    mask = np.all((tris >= 0) & (tris < n), axis=1)

    labels = fragment.classifications
    if labels is not None:
        if len(labels) == len(tris):
            mask &= np.isin(labels, _GROUND_LABELS)
        else:
            logger.warning(
                "Ignoring %d classifications for %d triangles", len(labels), len(tris)
            )

    safe = np.where(mask[:, None], tris, 0)
    avg_up = normals[safe].mean(axis=1)[:, 1]
    return mask & (avg_up > UP_THRESHOLD)


# ── smoothing ─────────────────────────────────────────────────────────

def _adjacency(triangles: np.ndarray, n: int) -> sparse.csr_matrix:
    edges = np.concatenate(
        [triangles[:, [0, 1]], triangles[:, [1, 2]], triangles[:, [2, 0]]]
    )
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    adj = sparse.coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n)).tocsr()
    adj.data[:] = 1.0
    return adj


def laplacian_smooth(
    vertices: np.ndarray,
    triangles: np.ndarray,
    *,
    iterations: int = 3,
    lam: float = 0.3,
    vertical_factor: float = 0.5,
) -> np.ndarray:
    """Move each vertex toward the centroid of its edge neighbours.

    The Y axis moves at ``lam * vertical_factor`` so real contours survive
    while depth noise is damped.
    """
    out = np.asarray(vertices, dtype=np.float64).copy()
    if iterations <= 0 or len(triangles) == 0:
        return out

    adj = _adjacency(triangles, len(out))
    degree = np.asarray(adj.sum(axis=1)).ravel()
    has_neighbours = degree > 0
    step = np.array([lam, lam * vertical_factor, lam])

    for _ in range(iterations):
        centroid = adj @ out
        centroid[has_neighbours] /= degree[has_neighbours, None]
        delta = (centroid - out) * step
        out[has_neighbours] += delta[has_neighbours]
    return out


# ── public API ────────────────────────────────────────────────────────

def reconstruct_surface(
    fragments: Iterable[MeshFragment],
    *,
    smoothing_iterations: int = 3,
    smoothing_lambda: float = 0.3,
    vertical_factor: float = 0.5,
) -> GreenSurface:
    """Stitch fragments into a single smoothed green surface.

    Raises :class:`InsufficientDataError` when there are no fragments or
    fewer than three usable vertices survive the ground filter.
    """
    fragments = list(fragments)
    if not fragments:
        raise InsufficientDataError("No mesh fragments supplied")

    all_vertices: list[np.ndarray] = []
    all_normals: list[np.ndarray] = []
    all_triangles: list[np.ndarray] = []
    offset = 0
    for fragment in fragments:
        world, normals = transform_fragment(fragment)
        keep = _ground_mask(fragment, normals)
        all_vertices.append(world)
        all_normals.append(normals)
        all_triangles.append(fragment.triangles[keep] + offset)
        offset += len(world)

    vertices = np.concatenate(all_vertices) if all_vertices else np.empty((0, 3))
    normals = np.concatenate(all_normals) if all_normals else np.empty((0, 3))
    triangles = np.concatenate(all_triangles).reshape(-1, 3)
    logger.info(
        "Fragments: %d, vertices: %d, ground triangles: %d",
        len(fragments), len(vertices), len(triangles),
    )

    # Weld referenced vertices on the 1 mm grid
    used = np.unique(triangles)
    if len(used) < 3:
        raise InsufficientDataError(
            f"Only {len(used)} usable ground vertices after filtering"
        )
    keys = np.round(vertices[used] * WELD_PRECISION).astype(np.int64)
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    inverse = inverse.reshape(-1)
    n_welded = len(first)

    counts = np.bincount(inverse, minlength=n_welded).astype(np.float64)
    welded = np.zeros((n_welded, 3))
    welded_normals = np.zeros((n_welded, 3))
    np.add.at(welded, inverse, vertices[used])
    np.add.at(welded_normals, inverse, normals[used])
    welded /= counts[:, None]

    lookup = np.full(len(vertices), -1, dtype=np.int64)
    lookup[used] = inverse
    tris = lookup[triangles]
    collapsed = (tris[:, 0] == tris[:, 1]) | (tris[:, 1] == tris[:, 2]) | (tris[:, 0] == tris[:, 2])
    tris = tris[~collapsed]
    logger.info(
        "Welded %d → %d vertices (%d collapsed triangles dropped)",
        len(used), n_welded, int(collapsed.sum()),
    )
    if n_welded < 3:
        raise InsufficientDataError(f"Only {n_welded} vertices after welding")

    smoothed = laplacian_smooth(
        welded,
        tris,
        iterations=smoothing_iterations,
        lam=smoothing_lambda,
        vertical_factor=vertical_factor,
    )
    # Welded normals only matter for vertices no surviving face touches
    recomputed = compute_vertex_normals(smoothed, tris)
    touched = np.zeros(n_welded, dtype=bool)
    touched[tris.ravel()] = True
    recomputed[~touched] = _normalize_rows(welded_normals[~touched])

    bounds = compute_bounds(smoothed)
    score = quality_score(n_welded, bounds)
    surface = GreenSurface(
        vertices=smoothed,
        triangles=tris,
        normals=recomputed,
        bounding_box=bounds,
        quality_score=score,
    )
    logger.info(
        "Surface %s: %d vertices, %d triangles, %.1f m², quality %.2f",
        surface.id, surface.vertex_count, surface.triangle_count, bounds.area, score,
    )
    return surface


def filter_to_radius(surface: GreenSurface, center: Vec3, radius: float) -> GreenSurface:
    """Keep triangles whose centroid lies within *radius* (horizontally) of *center*.

    The result is a new surface with its own id.  If fewer than three
    vertices would remain the input surface is returned unchanged.
    """
    if surface.triangle_count == 0:
        return surface

    verts = surface.vertices.astype(np.float64)
    centroids = verts[surface.triangles].mean(axis=1)
    d = np.hypot(centroids[:, 0] - center.x, centroids[:, 2] - center.z)
    kept = surface.triangles[d <= radius]

    used, remapped = np.unique(kept, return_inverse=True)
    if len(used) < 3:
        logger.warning(
            "Radius filter (%.2f m) left %d vertices, keeping the full surface",
            radius, len(used),
        )
        return surface

    new_vertices = verts[used]
    filtered = GreenSurface(
        vertices=new_vertices,
        triangles=remapped.reshape(-1, 3),
        normals=surface.normals[used],
        bounding_box=compute_bounds(new_vertices),
        captured_at=surface.captured_at,
        quality_score=surface.quality_score,
    )
    logger.info(
        "Filtered surface to %.2f m: %d → %d vertices",
        radius, surface.vertex_count, filtered.vertex_count,
    )
    return filtered
