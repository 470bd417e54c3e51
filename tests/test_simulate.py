"""Tests for the ball path simulator and the height cache."""

from __future__ import annotations

import math

import numpy as np
import pytest

from conftest import ball_at, grid_surface, hole_at
from puttline.core.settings import GrassType, PhysicsSettings
from puttline.core.types import AnalysisInterrupted, GreenSurface, SimulationStatus, Vec3
from puttline.pipeline.physics import (
    FEET_TO_METRES,
    STIMP_RELEASE_SPEED,
    derive_physics_parameters,
)
from puttline.pipeline.simulate import (
    MAX_PATH_POINTS,
    PathSimulator,
    SurfaceHeightCache,
    SurfaceHeightIndex,
    safe_direction,
)
from puttline.pipeline.reconstruct import compute_bounds
from puttline.pipeline.slope import SlopeData, build_slope_data
from puttline.pipeline.solver import CancellationToken

DIRECTIONS = [(1.0, 0.0), (-1.0, 0.0), (0.0, 1.0), (0.0, -1.0)]


def _roll(surface, slope, params, direction, speed, hole=(0.0, 0.0, -50.0), ball=(0.0, 0.0, 0.0)):
    return PathSimulator().simulate(
        ball_at(*ball),
        Vec3(x=direction[0], y=0.0, z=direction[1]),
        speed,
        surface,
        slope,
        hole_at(*hole),
        params,
    )


class TestStimpmeterRoundTrip:
    @pytest.mark.parametrize("stimp", [6, 10, 14])
    def test_bent_every_direction(self, wide_flat_surface: GreenSurface, stimp: float):
        slope = build_slope_data(wide_flat_surface)
        params = derive_physics_parameters(PhysicsSettings(stimpmeter_speed=stimp))
        target = stimp * FEET_TO_METRES
        for dx, dz in DIRECTIONS:
            # Keep the hole well away, behind the ball
            result = _roll(wide_flat_surface, slope, params, (dx, dz), STIMP_RELEASE_SPEED,
                           hole=(-5.0 * dx, 0.0, -5.0 * dz))
            assert result.status == SimulationStatus.STOPPED
            rolled = math.hypot(result.final_position.x, result.final_position.z)
            assert rolled == pytest.approx(target, rel=0.02)

    @pytest.mark.parametrize("stimp", [8, 12])
    def test_bermuda_with_and_against_grain(self, wide_flat_surface: GreenSurface, stimp: float):
        slope = build_slope_data(wide_flat_surface)
        params = derive_physics_parameters(
            PhysicsSettings(stimpmeter_speed=stimp, grass_type=GrassType.BERMUDA)
        )
        # Default grain grows toward −Z
        down = _roll(wide_flat_surface, slope, params, (0.0, -1.0), STIMP_RELEASE_SPEED,
                     hole=(0.0, 0.0, 5.0))
        into = _roll(wide_flat_surface, slope, params, (0.0, 1.0), STIMP_RELEASE_SPEED,
                     hole=(0.0, 0.0, -5.0))
        with_grain = abs(down.final_position.z)
        against = abs(into.final_position.z)
        assert with_grain > against
        assert (with_grain + against) / 2 == pytest.approx(stimp * FEET_TO_METRES, rel=0.02)


class TestSimulate:
    def test_holes_a_straight_putt(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        params = derive_physics_parameters()
        speed = params.speed_for_distance(3.2)
        result = _roll(flat_surface, slope, params, (0.0, 1.0), speed, hole=(0.0, 0.0, 3.0))
        assert result.status == SimulationStatus.HOLED
        assert result.holed
        assert 0 < result.entry_speed < 1.63
        assert result.entry_offset == pytest.approx(0.0, abs=1e-6)
        assert result.closest_approach < params.effective_hole_radius
        last = result.path[-1]
        assert (last.position.x, last.position.z) == (0.0, 3.0)
        assert last.speed == 0.0
        assert len(result.path) <= MAX_PATH_POINTS

    def test_too_fast_lips_past(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        params = derive_physics_parameters()
        result = _roll(flat_surface, slope, params, (0.0, 1.0), 3.0, hole=(0.0, 0.0, 1.0))
        assert not result.holed
        assert result.lip_out
        assert result.closest_approach < 0.01

    def test_lip_out_when_it_stops_past_the_hole(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        params = derive_physics_parameters()
        # Crosses the cup above capture speed and runs out on the green
        result = _roll(flat_surface, slope, params, (0.0, 1.0), 2.2, hole=(0.0, 0.0, 0.3))
        assert result.status == SimulationStatus.LIP_OUT
        assert result.lip_out
        assert not result.holed
        assert result.entry_speed is None
        assert 0.3 < result.final_position.z < 5.0

    def test_gives_up_past_the_rollout_estimate(self):
        # Flat around the ball, then a 10 % fall the ball runs away down
        surface = grid_surface(
            (-1.5, 1.5), (-1.0, 8.0), 0.1, height=lambda x, z: -0.1 * np.maximum(z - 0.5, 0.0)
        )
        slope = build_slope_data(surface)
        params = derive_physics_parameters()
        result = _roll(surface, slope, params, (0.0, 1.0), 1.0, hole=(0.0, 0.0, -0.5))
        limit = 1.5 * params.distance_for_speed(1.0)
        assert result.status == SimulationStatus.STOPPED
        assert limit < result.final_position.z < limit + 0.05
        assert result.path[-1].speed > 0.3

    def test_is_deterministic(self, side_slope_surface: GreenSurface):
        slope = build_slope_data(side_slope_surface)
        params = derive_physics_parameters()
        a = _roll(side_slope_surface, slope, params, (0.1, 1.0), 2.0, hole=(0.0, 0.0, 3.0))
        b = _roll(side_slope_surface, slope, params, (0.1, 1.0), 2.0, hole=(0.0, 0.0, 3.0))
        assert a.model_dump() == b.model_dump()

    def test_breaks_downhill(self, side_slope_surface: GreenSurface):
        slope = build_slope_data(side_slope_surface)
        params = derive_physics_parameters()
        result = _roll(side_slope_surface, slope, params, (0.0, 1.0), 2.0, hole=(0.0, 0.0, 10.0))
        assert result.final_position.x < -0.02

    def test_uphill_ball_does_not_roll_back(self, uphill_surface: GreenSurface):
        slope = build_slope_data(uphill_surface)
        params = derive_physics_parameters()
        result = _roll(uphill_surface, slope, params, (0.0, 1.0), 1.5, hole=(0.0, 0.0, 10.0))
        zs = [p.position.z for p in result.path]
        assert all(b >= a for a, b in zip(zs, zs[1:]))
        assert result.status == SimulationStatus.STOPPED

    def test_height_follows_surface(self, uphill_surface: GreenSurface):
        slope = build_slope_data(uphill_surface)
        params = derive_physics_parameters()
        result = _roll(uphill_surface, slope, params, (0.0, 1.0), 1.5, hole=(0.0, 0.0, 10.0))
        end = result.final_position
        assert end.y == pytest.approx(0.03 * end.z, abs=1e-4)
        assert all(p.velocity.y == 0.0 for p in result.path)

    def test_leaves_the_surface(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        params = derive_physics_parameters()
        result = _roll(flat_surface, slope, params, (1.0, 0.0), 4.0, hole=(0.0, 0.0, 3.0))
        assert result.status == SimulationStatus.OUT_OF_BOUNDS

    def test_empty_slope_data(self, flat_surface: GreenSurface):
        params = derive_physics_parameters()
        result = _roll(flat_surface, SlopeData.empty(), params, (0.0, 1.0), 1.0)
        assert result.status == SimulationStatus.OUT_OF_BOUNDS
        assert len(result.path) == 1

    def test_zero_direction_is_safe(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        params = derive_physics_parameters()
        result = _roll(flat_surface, slope, params, (0.0, 0.0), 1.0, hole=(0.0, 0.0, 3.0))
        assert result.final_position.x > 0
        assert all(math.isfinite(p.position.x) for p in result.path)

    def test_zero_speed(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        result = _roll(flat_surface, slope, derive_physics_parameters(), (0.0, 1.0), 0.0)
        assert result.status == SimulationStatus.STOPPED

    def test_single_triangle_surface(self):
        verts = np.array([[-0.5, 0.0, -0.5], [0.5, 0.0, -0.5], [0.0, 0.0, 0.5]])
        surface = GreenSurface(
            vertices=verts,
            triangles=[[0, 1, 2]],
            normals=np.tile([0.0, 1.0, 0.0], (3, 1)),
            bounding_box=compute_bounds(verts),
        )
        slope = build_slope_data(surface)
        result = _roll(surface, slope, derive_physics_parameters(), (0.0, 1.0), 1.0, hole=(0.0, 0.0, 3.0))
        assert result.status in set(SimulationStatus)
        assert math.isfinite(result.final_position.z)

    def test_cancelled_token_interrupts(self, flat_surface: GreenSurface):
        slope = build_slope_data(flat_surface)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisInterrupted):
            PathSimulator().simulate(
                ball_at(0.0, 0.0, 0.0), Vec3(x=0.0, y=0.0, z=1.0), 1.5, flat_surface, slope,
                hole_at(0.0, 0.0, 10.0), derive_physics_parameters(), token=token,
            )


class TestSafeDirection:
    def test_normalises(self):
        assert safe_direction(Vec3(x=3.0, y=5.0, z=4.0)) == pytest.approx((0.6, 0.8))

    @pytest.mark.parametrize("v", [(0.0, 0.0, 0.0), (0.0, 1.0, 0.0), (float("nan"), 0.0, 0.0)])
    def test_degenerate(self, v):
        assert safe_direction(Vec3(x=v[0], y=v[1], z=v[2])) == (1.0, 0.0)


class TestHeightIndex:
    def test_barycentric_on_a_plane(self, uphill_surface: GreenSurface):
        index = SurfaceHeightIndex(uphill_surface)
        assert index.height_at(0.33, 1.27, default=-1.0) == pytest.approx(0.03 * 1.27, abs=1e-6)

    def test_vertex_fallback_near_edge(self, uphill_surface: GreenSurface):
        index = SurfaceHeightIndex(uphill_surface)
        h = index.height_at(1.7, 2.0, default=-1.0)
        assert h == pytest.approx(0.06, abs=0.01)

    def test_default_far_away(self, uphill_surface: GreenSurface):
        index = SurfaceHeightIndex(uphill_surface)
        assert index.height_at(40.0, 40.0, default=-1.0) == -1.0


class TestHeightCache:
    def test_reuses_index_for_same_surface(self, flat_surface: GreenSurface):
        cache = SurfaceHeightCache()
        assert cache.index_for(flat_surface) is cache.index_for(flat_surface)
        assert cache.surface_id == flat_surface.id

    def test_rebuilds_on_new_surface(self, flat_surface: GreenSurface, uphill_surface: GreenSurface):
        cache = SurfaceHeightCache()
        first = cache.index_for(flat_surface)
        second = cache.index_for(uphill_surface)
        assert first is not second
        assert cache.surface_id == uphill_surface.id

    def test_clear(self, flat_surface: GreenSurface):
        cache = SurfaceHeightCache()
        cache.index_for(flat_surface)
        cache.clear()
        assert cache.surface_id is None
