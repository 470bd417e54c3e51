"""Ball path simulator.

One call integrates one putt over the green: a skid phase, then pure rolling,
until the ball drops, stops, leaves the surface or runs out of time.  The
integrator is RK4 on a fixed 5 ms step with the slope sampled once per step
and the velocity-dependent forces (friction, grain) re-evaluated at each
sub-stage.  The loop runs on plain floats; NumPy only backs the height
index.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from puttline.core.types import (
    BallPosition,
    GreenSurface,
    HolePosition,
    PathPoint,
    SimulationResult,
    SimulationStatus,
    Vec3,
)
from puttline.pipeline.physics import (
    ROLLING_FACTOR,
    SKID_DISTANCE_RATIO,
    SKID_FRICTION_MULTIPLIER,
    PhysicsParameters,
)
from puttline.pipeline.slope import SlopeData

logger = logging.getLogger(__name__)

HEIGHT_CELL = 0.15
VERTEX_FALLBACK_RADIUS = 0.5
BARYCENTRIC_EPS = -0.001
BOUNDS_MARGIN = 1.0
EARLY_EXIT_FACTOR = 1.5
MIN_FRICTION_SPEED = 0.001
CAPTURE_TIME_PRECISION = 1e-4
MAX_PATH_POINTS = 200
DENSE_PATH_POINTS = 180
TOKEN_POLL_STEPS = 64


# ── height re-projection ──────────────────────────────────────────────

class SurfaceHeightIndex:
    """Cell lookups over one surface's triangles and vertices.

    Construction only sorts the triangles by the first cell column they
    touch.  The triangles (and fallback vertices) of a cell are gathered
    with a binary search the first time the ball enters that cell and kept
    for the rest of the analysis.
    """

    def __init__(self, surface: GreenSurface):
        self.surface_id = surface.id
        verts = surface.vertices.astype(np.float64)
        corners = verts[surface.triangles]                  # (M, 3, 3)
        xz = corners[:, :, [0, 2]]
        lo = np.floor(xz.min(axis=1) / HEIGHT_CELL).astype(np.int64)
        hi = np.floor(xz.max(axis=1) / HEIGHT_CELL).astype(np.int64)

        order = np.argsort(lo[:, 0], kind="stable")
        self._corners = corners.reshape(-1, 9)[order]
        self._lo = lo[order]
        self._hi = hi[order]
        self._max_span = int((hi[:, 0] - lo[:, 0]).max()) if len(lo) else 0

        vcol = np.floor(verts[:, 0] / HEIGHT_CELL).astype(np.int64)
        vorder = np.argsort(vcol, kind="stable")
        self._verts = verts[vorder]
        self._vcol = vcol[vorder]
        self._vrow = np.floor(self._verts[:, 2] / HEIGHT_CELL).astype(np.int64)

        self._triangle_cells: dict[tuple[int, int], list[list[float]]] = {}
        self._vertex_cells: dict[tuple[int, int], np.ndarray] = {}

    def _triangles_in(self, cx: int, cz: int) -> list[list[float]]:
        found = self._triangle_cells.get((cx, cz))
        if found is None:
            start = np.searchsorted(self._lo[:, 0], cx - self._max_span, side="left")
            end = np.searchsorted(self._lo[:, 0], cx, side="right")
            lo, hi = self._lo[start:end], self._hi[start:end]
            hit = (hi[:, 0] >= cx) & (lo[:, 1] <= cz) & (hi[:, 1] >= cz)
            found = self._corners[start:end][hit].tolist()
            self._triangle_cells[(cx, cz)] = found
        return found

    def _vertices_near(self, cx: int, cz: int) -> np.ndarray:
        found = self._vertex_cells.get((cx, cz))
        if found is None:
            reach = int(math.ceil(VERTEX_FALLBACK_RADIUS / HEIGHT_CELL))
            start = np.searchsorted(self._vcol, cx - reach, side="left")
            end = np.searchsorted(self._vcol, cx + reach, side="right")
            rows = self._vrow[start:end]
            found = self._verts[start:end][np.abs(rows - cz) <= reach]
            self._vertex_cells[(cx, cz)] = found
        return found

    def height_at(self, x: float, z: float, default: float) -> float:
        """Surface height under (x, z), or *default* when nothing is nearby."""
        cx, cz = math.floor(x / HEIGHT_CELL), math.floor(z / HEIGHT_CELL)
        for x0, y0, z0, x1, y1, z1, x2, y2, z2 in self._triangles_in(cx, cz):
            denom = (z1 - z2) * (x0 - x2) + (x2 - x1) * (z0 - z2)
            if abs(denom) < 1e-12:
                continue
            a = ((z1 - z2) * (x - x2) + (x2 - x1) * (z - z2)) / denom
            b = ((z2 - z0) * (x - x2) + (x0 - x2) * (z - z2)) / denom
            c = 1.0 - a - b
            if a >= BARYCENTRIC_EPS and b >= BARYCENTRIC_EPS and c >= BARYCENTRIC_EPS:
                return a * y0 + b * y1 + c * y2
        return self._vertex_fallback(x, z, cx, cz, default)

    def _vertex_fallback(self, x: float, z: float, cx: int, cz: int, default: float) -> float:
        pts = self._vertices_near(cx, cz)
        if not len(pts):
            return default
        d = np.hypot(pts[:, 0] - x, pts[:, 2] - z)
        near = d <= VERTEX_FALLBACK_RADIUS
        if not near.any():
            return default
        w = 1.0 / np.maximum(d[near], 0.01)
        return float((w * pts[near, 1]).sum() / w.sum())


class SurfaceHeightCache:
    """Holds the height index for the surface currently being analysed.

    Owned by one analysis; rebuilt whenever a surface with a different id
    is requested.
    """

    def __init__(self):
        self._index: Optional[SurfaceHeightIndex] = None

    def index_for(self, surface: GreenSurface) -> SurfaceHeightIndex:
        if self._index is None or self._index.surface_id != surface.id:
            self._index = SurfaceHeightIndex(surface)
            logger.debug("Built height index for surface %s", surface.id)
        return self._index

    @property
    def surface_id(self):
        return None if self._index is None else self._index.surface_id

    def clear(self) -> None:
        self._index = None


# ── simulator ─────────────────────────────────────────────────────────

def _point(x, y, z, vx, vz, t) -> PathPoint:
    return PathPoint(
        position=Vec3(x=x, y=y, z=z),
        velocity=Vec3(x=vx, y=0.0, z=vz),
        time=t,
    )


def safe_direction(direction: Vec3) -> tuple[float, float]:
    """Horizontal unit vector of *direction*, or +X if it has no horizontal length."""
    length = math.hypot(direction.x, direction.z)
    if not math.isfinite(length) or length < 0.001:
        return 1.0, 0.0
    return direction.x / length, direction.z / length


class PathSimulator:
    """Deterministic single-putt integrator.

    The only state kept between calls is the height cache, which the owner
    of the analysis passes in (or gets a private one).
    """

    def __init__(self, height_cache: Optional[SurfaceHeightCache] = None):
        self.height_cache = height_cache or SurfaceHeightCache()

    def simulate(
        self,
        ball: BallPosition,
        direction: Vec3,
        speed: float,
        surface: GreenSurface,
        slope_data: SlopeData,
        hole: HolePosition,
        parameters: PhysicsParameters,
        *,
        token=None,
    ) -> SimulationResult:
        """Roll a ball from *ball* along *direction* at *speed* (m/s)."""
        p = parameters
        start = ball.world_position
        hx, hy, hz = hole.world_position.x, hole.world_position.y, hole.world_position.z
        x, y, z = start.x, start.y, start.z
        ux, uz = safe_direction(direction)
        if not math.isfinite(speed) or speed < 0:
            speed = 0.0
        vx, vz = ux * speed, uz * speed

        first = _point(x, y, z, vx, vz, 0.0)
        closest = math.hypot(x - hx, z - hz)
        if slope_data.is_empty:
            return SimulationResult(
                path=[first], final_position=first.position,
                status=SimulationStatus.OUT_OF_BOUNDS, closest_approach=closest,
            )

        index = self.height_cache.index_for(surface)
        bb = surface.bounding_box
        min_x, max_x = bb.min.x - BOUNDS_MARGIN, bb.max.x + BOUNDS_MARGIN
        min_z, max_z = bb.min.z - BOUNDS_MARGIN, bb.max.z + BOUNDS_MARGIN

        g = p.gravity
        dt = p.time_step
        skid_mu = p.friction_coefficient * SKID_FRICTION_MULTIPLIER
        roll_mu = p.rolling_resistance
        eff_radius = p.effective_hole_radius
        # Roll-out estimate on the local incline; flat if the slope runs away with it
        gx0, gz0 = slope_data.gradient_at(x, z)
        estimate = p.distance_for_speed(speed, gx0 * ux + gz0 * uz)
        if not math.isfinite(estimate):
            estimate = p.distance_for_speed(speed)
        skid_limit = SKID_DISTANCE_RATIO * estimate
        grain_friction = p.grain_friction_factor
        grain_push = p.grain_deflection

        def accel(vx: float, vz: float, gx: float, gz: float, skidding: bool):
            m2 = gx * gx + gz * gz
            cos_t = 1.0 / math.sqrt(1.0 + m2)
            ax = az = 0.0
            if m2 > 1e-18:
                # g·sinθ / |∇h| = g·cosθ, pointing down −∇h
                pull = g * cos_t * (1.0 if skidding else ROLLING_FACTOR)
                ax = -gx * pull
                az = -gz * pull
            v = math.hypot(vx, vz)
            if v > MIN_FRICTION_SPEED:
                dx, dz = vx / v, vz / v
                mu = skid_mu if skidding else roll_mu
                f = mu * g * cos_t * grain_friction(dx, dz)
                ax -= f * dx
                az -= f * dz
                px, pz = grain_push(v, dx, dz)
                ax += px
                az += pz
            return ax, az

        path = [first]
        status = None
        entry_speed = entry_offset = None
        skidding = True
        in_zone = False
        traveled = 0.0
        t = 0.0
        step = 0

        while True:
            if math.hypot(vx, vz) < p.stop_threshold:
                status = SimulationStatus.STOPPED
                break
            if t >= p.max_simulation_time:
                status = SimulationStatus.TIMEOUT
                break
            step += 1
            if token is not None and step % TOKEN_POLL_STEPS == 0:
                token.raise_if_stopped()

            grad = slope_data.gradient_at(x, z)
            if grad is None:
                status = SimulationStatus.OUT_OF_BOUNDS
                break
            gx, gz = grad

            # RK4, slope held fixed across the sub-stages
            a1x, a1z = accel(vx, vz, gx, gz, skidding)
            v2x, v2z = vx + 0.5 * dt * a1x, vz + 0.5 * dt * a1z
            a2x, a2z = accel(v2x, v2z, gx, gz, skidding)
            v3x, v3z = vx + 0.5 * dt * a2x, vz + 0.5 * dt * a2z
            a3x, a3z = accel(v3x, v3z, gx, gz, skidding)
            v4x, v4z = vx + dt * a3x, vz + dt * a3z
            a4x, a4z = accel(v4x, v4z, gx, gz, skidding)

            nx = x + dt / 6.0 * (vx + 2 * v2x + 2 * v3x + v4x)
            nz = z + dt / 6.0 * (vz + 2 * v2z + 2 * v3z + v4z)
            nvx = vx + dt / 6.0 * (a1x + 2 * a2x + 2 * a3x + a4x)
            nvz = vz + dt / 6.0 * (a1z + 2 * a2z + 2 * a3z + a4z)

            # Friction alone never turns the ball around; only the slope can.
            if nvx * vx + nvz * vz < 0:
                ax, az = accel(nvx, nvz, gx, gz, skidding)
                if ax * nvx + az * nvz <= 0:
                    nvx = nvz = 0.0

            prev = (x, y, z, vx, vz, t)
            traveled += math.hypot(nx - x, nz - z)
            x, z, vx, vz = nx, nz, nvx, nvz
            y = index.height_at(x, z, y)
            t += dt
            if skidding and traveled > skid_limit:
                skidding = False

            if not (min_x <= x <= max_x and min_z <= z <= max_z):
                status = SimulationStatus.OUT_OF_BOUNDS
                break

            dist = math.hypot(x - hx, z - hz)
            closest = min(closest, dist)
            v = math.hypot(vx, vz)
            if dist < eff_radius:
                in_zone = True
                if p.can_capture(v, dist):
                    entry = self._locate_entry(prev, (x, y, z, vx, vz, t), hx, hz, p)
                    ex, ey, ez, evx, evz, et = entry
                    entry_speed = math.hypot(evx, evz)
                    entry_offset = _lateral_offset(ex, ez, evx, evz, hx, hz)
                    closest = min(closest, math.hypot(ex - hx, ez - hz))
                    path = path[: MAX_PATH_POINTS - 2]
                    path.append(_point(ex, ey, ez, evx, evz, et))
                    path.append(_point(hx, hy, hz, 0.0, 0.0, et))
                    return SimulationResult(
                        path=path,
                        final_position=Vec3(x=hx, y=hy, z=hz),
                        status=SimulationStatus.HOLED,
                        entry_speed=entry_speed,
                        entry_offset=entry_offset,
                        closest_approach=closest,
                    )

            if (
                not in_zone
                and traveled > EARLY_EXIT_FACTOR * estimate
                and vx * (hx - x) + vz * (hz - z) < 0
            ):
                status = SimulationStatus.STOPPED
                break

            n = len(path)
            if n < DENSE_PATH_POINTS:
                if step % 2 == 0:
                    path.append(_point(x, y, z, vx, vz, t))
            elif n < MAX_PATH_POINTS - 2 and step % 8 == 0:
                path.append(_point(x, y, z, vx, vz, t))

        if path[-1].time != t:
            path.append(_point(x, y, z, vx, vz, t))
        final_dist = math.hypot(x - hx, z - hz)
        lipped = in_zone and final_dist > p.hole_radius
        if status == SimulationStatus.STOPPED and lipped:
            status = SimulationStatus.LIP_OUT
        return SimulationResult(
            path=path[:MAX_PATH_POINTS],
            final_position=Vec3(x=x, y=y, z=z),
            status=status,
            closest_approach=closest,
            lip_out=lipped,
        )

    @staticmethod
    def _locate_entry(prev, curr, hx, hz, p: PhysicsParameters):
        """Binary-search the step for the first instant the capture test passes."""
        x0, y0, z0, vx0, vz0, t0 = prev
        x1, y1, z1, vx1, vz1, t1 = curr
        lo, hi = 0.0, 1.0
        while (hi - lo) * (t1 - t0) > CAPTURE_TIME_PRECISION:
            mid = 0.5 * (lo + hi)
            mx = x0 + (x1 - x0) * mid
            mz = z0 + (z1 - z0) * mid
            mv = math.hypot(vx0 + (vx1 - vx0) * mid, vz0 + (vz1 - vz0) * mid)
            if p.can_capture(mv, math.hypot(mx - hx, mz - hz)):
                hi = mid
            else:
                lo = mid
        return (
            x0 + (x1 - x0) * hi,
            y0 + (y1 - y0) * hi,
            z0 + (z1 - z0) * hi,
            vx0 + (vx1 - vx0) * hi,
            vz0 + (vz1 - vz0) * hi,
            t0 + (t1 - t0) * hi,
        )


def _lateral_offset(x: float, z: float, vx: float, vz: float, hx: float, hz: float) -> float:
    """Distance from the hole centre to the line of travel through (x, z)."""
    v = math.hypot(vx, vz)
    if v < 1e-9:
        return math.hypot(hx - x, hz - z)
    return abs(vx * (hz - z) - vz * (hx - x)) / v


def entry_angle(result: SimulationResult, hole: HolePosition) -> float:
    """Angle between the ball's heading at entry and the line to the hole centre."""
    if not result.holed or len(result.path) < 2:
        return 0.0
    entry = result.path[-2]
    vx, vz = entry.velocity.x, entry.velocity.z
    dx = hole.world_position.x - entry.position.x
    dz = hole.world_position.z - entry.position.z
    if math.hypot(vx, vz) < 1e-9 or math.hypot(dx, dz) < 1e-9:
        return 0.0
    return abs(math.atan2(vx * dz - vz * dx, vx * dx + vz * dz))
