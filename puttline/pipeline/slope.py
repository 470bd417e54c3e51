"""Slope field: GreenSurface → denoised gradient samples with fast lookup.

A gradient here is ∇h = (dh/dx, dh/dz), the rise per metre along each
horizontal axis.  It points uphill; a ball is pushed along −gradient.
"""

from __future__ import annotations

import logging
import math
from typing import NamedTuple, Optional

import numpy as np
from scipy.spatial import cKDTree

from puttline.core.types import GreenSurface, Vec3

logger = logging.getLogger(__name__)

UP_THRESHOLD = 0.7
MAX_GRADIENT = 0.35             # 35 % slope, steeper is not green
OUTLIER_RADIUS = 0.25
OUTLIER_FACTOR = 3.0
OUTLIER_MIN_NEIGHBOURS = 3
SMOOTHING_RADIUS = 0.15
MIN_WEIGHT_DISTANCE = 0.005
FLAT_AVERAGE_PCT = 0.8
FLAT_MAX_PCT = 2.0
MAX_SLOPE_CAP = 15.0
AVERAGE_SLOPE_CAP = 10.0

HASH_CELL = 0.25
FALLBACK_RADII = (0.10, 0.25, 0.5, 1.0)
GRID_SPACING = 0.05
SPLAT_RADIUS = 0.15
_MAX_GRID_NODES = 1_000_000


class GradientSample(NamedTuple):
    gradient_x: float
    gradient_z: float

    @property
    def magnitude(self) -> float:
        return math.hypot(self.gradient_x, self.gradient_z)

    @property
    def percent(self) -> float:
        return self.magnitude * 100.0

    @property
    def angle(self) -> float:
        """Slope angle in radians."""
        return math.atan(self.magnitude)


class SlopeData:
    """Immutable gradient field with a dense grid and a spatial hash.

    ``positions`` is (N, 3), ``gradients`` (N, 2).  Both lookup structures
    are built once here; :meth:`gradient_at` is safe to call from the
    simulator's inner loop.
    """

    def __init__(
        self,
        positions: np.ndarray,
        gradients: np.ndarray,
        *,
        max_slope: float = 0.0,
        average_slope: float = 0.0,
        dominant_direction: tuple[float, float] = (0.0, 0.0),
    ):
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        self.gradients = np.asarray(gradients, dtype=np.float64).reshape(-1, 2)
        magnitudes = np.linalg.norm(self.gradients, axis=1)
        self.slope_percentages = magnitudes * 100.0
        self.slope_angles = np.arctan(magnitudes)
        for arr in (self.positions, self.gradients, self.slope_percentages, self.slope_angles):
            arr.setflags(write=False)

        self.max_slope = float(max_slope)
        self.average_slope = float(average_slope)
        self.dominant_direction = (float(dominant_direction[0]), float(dominant_direction[1]))

        self._xs = self.positions[:, 0].tolist()
        self._zs = self.positions[:, 2].tolist()
        self._gx = self.gradients[:, 0].tolist()
        self._gz = self.gradients[:, 1].tolist()
        self._buckets = self._build_hash()
        self._grid = self._build_grid()

    @classmethod
    def empty(cls) -> "SlopeData":
        return cls(np.empty((0, 3)), np.empty((0, 2)))

    @property
    def is_empty(self) -> bool:
        return len(self.positions) == 0

    @property
    def sample_count(self) -> int:
        return len(self.positions)

    # ── construction of lookups ───────────────────────────────────────
    def _build_hash(self) -> dict[tuple[int, int], list[int]]:
        buckets: dict[tuple[int, int], list[int]] = {}
        if self.is_empty:
            return buckets
        cells = np.floor(self.positions[:, [0, 2]] / HASH_CELL).astype(np.int64)
        for i, key in enumerate(zip(cells[:, 0].tolist(), cells[:, 1].tolist())):
            buckets.setdefault(key, []).append(i)
        return buckets

    def _build_grid(self):
        """IDW-splat the samples onto a regular grid (1/d² within SPLAT_RADIUS)."""
        if self.is_empty:
            return None
        xz = self.positions[:, [0, 2]]
        origin = xz.min(axis=0) - SPLAT_RADIUS
        shape = np.ceil((xz.max(axis=0) + SPLAT_RADIUS - origin) / GRID_SPACING).astype(int) + 1
        nx, nz = int(shape[0]), int(shape[1])
        if nx * nz > _MAX_GRID_NODES:
            logger.warning("Dense slope grid would need %d nodes, using hash lookup only", nx * nz)
            return None

        home = np.round((xz - origin) / GRID_SPACING).astype(np.int64)
        reach = int(math.ceil(SPLAT_RADIUS / GRID_SPACING))
        size = nx * nz
        wsum = np.zeros(size)
        gx_sum = np.zeros(size)
        gz_sum = np.zeros(size)
        for di in range(-reach, reach + 1):
            for dj in range(-reach, reach + 1):
                ix = home[:, 0] + di
                iz = home[:, 1] + dj
                inside = (ix >= 0) & (ix < nx) & (iz >= 0) & (iz < nz)
                node_x = origin[0] + ix * GRID_SPACING
                node_z = origin[1] + iz * GRID_SPACING
                d = np.hypot(xz[:, 0] - node_x, xz[:, 1] - node_z)
                hit = inside & (d <= SPLAT_RADIUS)
                if not hit.any():
                    continue
                w = 1.0 / np.maximum(d[hit], MIN_WEIGHT_DISTANCE) ** 2
                flat = ix[hit] * nz + iz[hit]
                wsum += np.bincount(flat, weights=w, minlength=size)
                gx_sum += np.bincount(flat, weights=w * self.gradients[hit, 0], minlength=size)
                gz_sum += np.bincount(flat, weights=w * self.gradients[hit, 1], minlength=size)

        valid = wsum > 0
        gx = np.zeros(size)
        gz = np.zeros(size)
        gx[valid] = gx_sum[valid] / wsum[valid]
        gz[valid] = gz_sum[valid] / wsum[valid]
        logger.debug("Slope grid %d×%d, %d valid nodes", nx, nz, int(valid.sum()))
        return (
            float(origin[0]), float(origin[1]), nx, nz,
            gx.tolist(), gz.tolist(), valid.tolist(),
        )

    # ── lookups ───────────────────────────────────────────────────────
    def _grid_lookup(self, x: float, z: float):
        ox, oz, nx, nz, gx, gz, valid = self._grid
        fx = (x - ox) / GRID_SPACING
        fz = (z - oz) / GRID_SPACING
        i = math.floor(fx)
        j = math.floor(fz)
        if i < 0 or j < 0 or i + 1 >= nx or j + 1 >= nz:
            return None
        k00 = i * nz + j
        k01 = k00 + 1
        k10 = k00 + nz
        k11 = k10 + 1
        if not (valid[k00] and valid[k01] and valid[k10] and valid[k11]):
            return None
        tx = fx - i
        tz = fz - j
        w00 = (1 - tx) * (1 - tz)
        w01 = (1 - tx) * tz
        w10 = tx * (1 - tz)
        w11 = tx * tz
        return (
            gx[k00] * w00 + gx[k01] * w01 + gx[k10] * w10 + gx[k11] * w11,
            gz[k00] * w00 + gz[k01] * w01 + gz[k10] * w10 + gz[k11] * w11,
        )

    def _hash_lookup(self, x: float, z: float, radius: float):
        cells = int(math.ceil(radius / HASH_CELL))
        cx = math.floor(x / HASH_CELL)
        cz = math.floor(z / HASH_CELL)
        xs, zs, gxs, gzs = self._xs, self._zs, self._gx, self._gz
        wsum = gx = gz = 0.0
        for i in range(cx - cells, cx + cells + 1):
            for j in range(cz - cells, cz + cells + 1):
                bucket = self._buckets.get((i, j))
                if bucket is None:
                    continue
                for k in bucket:
                    d = math.hypot(xs[k] - x, zs[k] - z)
                    if d > radius:
                        continue
                    w = 1.0 / max(d, 0.001)
                    wsum += w
                    gx += w * gxs[k]
                    gz += w * gzs[k]
        if wsum == 0.0:
            return None
        return gx / wsum, gz / wsum

    def gradient_at(self, x: float, z: float) -> Optional[tuple[float, float]]:
        """Gradient at (x, z): grid, then widening IDW, then the global trend.

        ``None`` only when the field has no samples.
        """
        if self.is_empty:
            return None
        if self._grid is not None:
            hit = self._grid_lookup(x, z)
            if hit is not None:
                return hit
        for radius in FALLBACK_RADII:
            hit = self._hash_lookup(x, z, radius)
            if hit is not None:
                return hit
        scale = self.average_slope / 100.0
        return self.dominant_direction[0] * scale, self.dominant_direction[1] * scale

    def slope_at(self, position: Vec3) -> Optional[GradientSample]:
        hit = self.gradient_at(position.x, position.z)
        if hit is None:
            return None
        return GradientSample(*hit)

    def slopes_along_line(self, start: Vec3, end: Vec3, steps: int = 10) -> list[GradientSample]:
        """Samples at ``steps + 1`` evenly spaced points from *start* to *end*."""
        out = []
        for k in range(steps + 1):
            t = k / steps
            hit = self.gradient_at(
                start.x + (end.x - start.x) * t, start.z + (end.z - start.z) * t
            )
            if hit is not None:
                out.append(GradientSample(*hit))
        return out

    def elevation_change(self, start: Vec3, end: Vec3, steps: int = 10) -> float:
        """Height gained going from *start* to *end*, integrated from the field."""
        dx = (end.x - start.x) / steps
        dz = (end.z - start.z) / steps
        rise = 0.0
        for k in range(steps):
            t = (k + 0.5) / steps
            hit = self.gradient_at(start.x + (end.x - start.x) * t, start.z + (end.z - start.z) * t)
            if hit is not None:
                rise += hit[0] * dx + hit[1] * dz
        return rise


# ── builder ───────────────────────────────────────────────────────────

def gradients_from_normals(normals: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(mask, gradients)`` for the ground-facing normals.

    Normals are flipped to point up first; the gradient of the tangent plane
    is (−nx/ny, −nz/ny).
    """
    n = np.asarray(normals, dtype=np.float64)
    n = np.where(n[:, 1:2] < 0, -n, n)
    mask = n[:, 1] > UP_THRESHOLD
    up = n[mask]
    grads = np.column_stack((-up[:, 0] / up[:, 1], -up[:, 2] / up[:, 1]))
    return mask, grads


def clamp_outliers(xz: np.ndarray, gradients: np.ndarray, tree: cKDTree) -> np.ndarray:
    """Clamp gradients more than 3× their local median magnitude to that median."""
    mags = np.linalg.norm(gradients, axis=1)
    mags_list = mags.tolist()
    out = gradients.copy()
    clamped = 0
    for i, neighbours in enumerate(tree.query_ball_point(xz, r=OUTLIER_RADIUS)):
        if len(neighbours) < OUTLIER_MIN_NEIGHBOURS:
            continue
        local = sorted(mags_list[j] for j in neighbours)
        median = local[len(local) // 2]
        if mags_list[i] > OUTLIER_FACTOR * max(median, 0.001):
            out[i] *= median / mags_list[i]
            clamped += 1
    if clamped:
        logger.debug("Clamped %d slope outliers", clamped)
    return out


def smooth_gradients(xz: np.ndarray, gradients: np.ndarray, tree: cKDTree) -> np.ndarray:
    """Inverse-distance-weighted average over neighbours within SMOOTHING_RADIUS."""
    n = len(gradients)
    self_weight = 1.0 / MIN_WEIGHT_DISTANCE
    wsum = np.full(n, self_weight)
    acc = gradients * self_weight

    pairs = tree.query_pairs(SMOOTHING_RADIUS, output_type="ndarray")
    if len(pairs):
        i, j = pairs[:, 0], pairs[:, 1]
        d = np.linalg.norm(xz[i] - xz[j], axis=1)
        w = 1.0 / np.maximum(d, MIN_WEIGHT_DISTANCE)
        wsum += np.bincount(i, weights=w, minlength=n) + np.bincount(j, weights=w, minlength=n)
        for axis in range(2):
            acc[:, axis] += np.bincount(i, weights=w * gradients[j, axis], minlength=n)
            acc[:, axis] += np.bincount(j, weights=w * gradients[i, axis], minlength=n)
    return acc / wsum[:, None]


def build_slope_data(surface: GreenSurface) -> SlopeData:
    """Convert a surface into a denoised, queryable gradient field."""
    if surface.vertex_count == 0:
        logger.warning("Empty surface, returning empty slope field")
        return SlopeData.empty()

    mask, grads = gradients_from_normals(surface.normals)
    positions = surface.vertices.astype(np.float64)[mask]
    steep = np.linalg.norm(grads, axis=1) > MAX_GRADIENT
    positions, grads = positions[~steep], grads[~steep]
    logger.info(
        "Slope samples: %d of %d vertices (%d too steep)",
        len(positions), surface.vertex_count, int(steep.sum()),
    )
    if len(positions) == 0:
        return SlopeData.empty()

    xz = positions[:, [0, 2]]
    tree = cKDTree(xz)
    grads = clamp_outliers(xz, grads, tree)
    grads = smooth_gradients(xz, grads, tree)

    pct = np.linalg.norm(grads, axis=1) * 100.0
    avg, peak = float(pct.mean()), float(pct.max())
    if avg < FLAT_AVERAGE_PCT and peak < FLAT_MAX_PCT:
        logger.info("Flat surface (avg %.2f%%, max %.2f%%), zeroing slope field", avg, peak)
        return SlopeData(positions, np.zeros_like(grads))

    total = grads.sum(axis=0)
    norm = float(np.linalg.norm(total))
    dominant = (float(total[0] / norm), float(total[1] / norm)) if norm > 1e-9 else (0.0, 0.0)
    data = SlopeData(
        positions,
        grads,
        max_slope=min(peak, MAX_SLOPE_CAP),
        average_slope=min(avg, AVERAGE_SLOPE_CAP),
        dominant_direction=dominant,
    )
    logger.info(
        "Slope field: avg %.2f%%, max %.2f%%, dominant (%.2f, %.2f)",
        data.average_slope, data.max_slope, dominant[0], dominant[1],
    )
    return data
