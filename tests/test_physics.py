"""Tests for the physics parameter model."""

from __future__ import annotations

import math

import numpy as np
import pytest
from pydantic import ValidationError

from puttline.core.settings import GrassType, GreenCondition, PhysicsSettings
from puttline.pipeline.physics import (
    EFFECTIVE_DECEL_FACTOR,
    FEET_TO_METRES,
    MAX_CAPTURE_SPEED,
    ROLLING_FACTOR,
    STANDARD_GRAVITY,
    STIMP_RELEASE_SPEED,
    derive_physics_parameters,
    gravity_at_altitude,
    temperature_factor,
)


class TestDerivePhysicsParameters:
    def test_default_friction(self):
        p = derive_physics_parameters()
        expected = STIMP_RELEASE_SPEED ** 2 / (
            2 * STANDARD_GRAVITY * EFFECTIVE_DECEL_FACTOR * 10 * FEET_TO_METRES
        )
        assert p.friction_coefficient == pytest.approx(expected)
        assert p.rolling_resistance == pytest.approx(ROLLING_FACTOR * expected)

    def test_faster_green_has_less_friction(self):
        slow = derive_physics_parameters(PhysicsSettings(stimpmeter_speed=8))
        fast = derive_physics_parameters(PhysicsSettings(stimpmeter_speed=12))
        assert fast.friction_coefficient < slow.friction_coefficient

    def test_moisture_adds_up_to_forty_percent(self):
        dry = derive_physics_parameters(PhysicsSettings(moisture=0.0))
        soaked = derive_physics_parameters(PhysicsSettings(moisture=1.0))
        assert soaked.friction_coefficient == pytest.approx(1.4 * dry.friction_coefficient)

    def test_warm_green_is_faster(self):
        cold = derive_physics_parameters(PhysicsSettings(temperature_c=5))
        warm = derive_physics_parameters(PhysicsSettings(temperature_c=35))
        assert warm.friction_coefficient < cold.friction_coefficient

    def test_temperature_factor_is_bounded(self):
        assert temperature_factor(20) == 1.0
        assert temperature_factor(-100) == 1.15
        assert temperature_factor(200) == 0.85

    def test_altitude_lowers_gravity(self):
        assert gravity_at_altitude(0) == STANDARD_GRAVITY
        high = derive_physics_parameters(PhysicsSettings(altitude_m=3000))
        assert high.gravity < STANDARD_GRAVITY

    def test_grain_direction_is_unit_vector(self):
        p = derive_physics_parameters(PhysicsSettings(grain_direction_deg=270))
        np.testing.assert_allclose(p.grain_direction, (0.0, -1.0), atol=1e-12)

    def test_parameters_are_frozen(self):
        p = derive_physics_parameters()
        with pytest.raises(ValidationError):
            p.gravity = 1.0

    def test_constants(self):
        p = derive_physics_parameters()
        assert p.time_step == 0.005
        assert p.ball_moment_of_inertia == pytest.approx(0.4 * 0.04593 * 0.02135 ** 2)
        assert p.effective_hole_radius == pytest.approx(0.054 - 0.02135)


class TestSettingsValidation:
    @pytest.mark.parametrize("stimp", [5.9, 14.1])
    def test_stimp_out_of_range(self, stimp: float):
        with pytest.raises(ValidationError):
            PhysicsSettings(stimpmeter_speed=stimp)

    def test_grain_direction_wraps(self):
        assert PhysicsSettings(grain_direction_deg=-90).grain_direction_deg == 270.0

    def test_condition_presets(self):
        s = PhysicsSettings().with_condition(GreenCondition.WET)
        assert s.moisture == 0.4
        assert PhysicsSettings().with_condition(GreenCondition.DRY).moisture == 0.0


class TestDistanceSpeed:
    @pytest.mark.parametrize("grass", list(GrassType))
    @pytest.mark.parametrize("stimp", [6, 8, 10, 12, 14])
    def test_stimp_release_matches_reading(self, grass: GrassType, stimp: float):
        p = derive_physics_parameters(PhysicsSettings(stimpmeter_speed=stimp, grass_type=grass))
        assert p.distance_for_speed(STIMP_RELEASE_SPEED) == pytest.approx(stimp * FEET_TO_METRES)

    def test_distance_strictly_increasing(self):
        p = derive_physics_parameters()
        speeds = np.linspace(0.1, 4.0, 40)
        distances = [p.distance_for_speed(v) for v in speeds]
        assert all(b > a for a, b in zip(distances, distances[1:]))

    @pytest.mark.parametrize("distance", [0.5, 2.0, 7.5])
    def test_speed_for_distance_inverts(self, distance: float):
        p = derive_physics_parameters()
        assert p.distance_for_speed(p.speed_for_distance(distance)) == pytest.approx(distance)
        v = p.speed_for_distance(distance, 0.02)
        assert p.distance_for_speed(v, 0.02) == pytest.approx(distance)

    def test_uphill_needs_more_speed(self):
        p = derive_physics_parameters()
        assert p.speed_for_distance(3.0, 0.03) > p.speed_for_distance(3.0) > p.speed_for_distance(3.0, -0.03)

    def test_runaway_downhill(self):
        p = derive_physics_parameters()
        assert p.distance_for_speed(1.0, -0.5) == math.inf


class TestGrain:
    def test_bent_has_no_grain_effect(self):
        p = derive_physics_parameters(PhysicsSettings(grass_type=GrassType.BENT))
        assert p.grain_friction_factor(0.0, -1.0) == 1.0
        assert p.grain_deflection(0.5, 1.0, 0.0) == (0.0, 0.0)

    def test_bermuda_with_and_against(self):
        p = derive_physics_parameters(PhysicsSettings(grass_type=GrassType.BERMUDA))
        assert p.grain_friction_factor(0.0, -1.0) == pytest.approx(0.8)
        assert p.grain_friction_factor(0.0, 1.0) == pytest.approx(1.2)

    def test_deflection_only_across_grain(self):
        p = derive_physics_parameters(PhysicsSettings(grass_type=GrassType.BERMUDA))
        along = p.grain_deflection(1.0, 0.0, -1.0)
        across = p.grain_deflection(1.0, 1.0, 0.0)
        assert math.hypot(*along) == pytest.approx(0.0, abs=1e-12)
        assert math.hypot(*across) > 0
        slow = p.grain_deflection(0.2, 1.0, 0.0)
        assert math.hypot(*slow) > math.hypot(*across)


class TestCapture:
    def test_never_captures_at_max_speed(self):
        p = derive_physics_parameters()
        for speed in (MAX_CAPTURE_SPEED, 2.0, 5.0):
            assert not p.can_capture(speed, 0.0)

    def test_never_captures_outside_effective_radius(self):
        p = derive_physics_parameters()
        for speed in (0.0, 0.5, 1.0, 1.6):
            assert not p.can_capture(speed, p.effective_hole_radius)
            assert not p.can_capture(speed, 0.1)

    def test_capture_radius_shrinks_with_speed(self):
        p = derive_physics_parameters()
        radii = [p.capture_radius(v) for v in np.linspace(0, 1.6, 17)]
        assert all(b < a for a, b in zip(radii, radii[1:]))
        assert p.can_capture(0.5, 0.01)

    def test_hole_probability(self):
        p = derive_physics_parameters()
        centred = p.hole_probability(0.8, 0.0, 0.0)
        assert centred == pytest.approx(1.0)
        assert p.hole_probability(0.8, 0.02, 0.0) < centred
        assert p.hole_probability(0.8, 0.0, 0.3) < centred
        assert p.hole_probability(2.0, 0.0, 0.0) == 0.0

    @pytest.mark.parametrize("args", [
        (float("nan"), 0.0, 0.0),
        (0.5, float("inf"), 0.0),
        (-0.5, 0.0, 0.0),
        (0.5, -0.01, 0.0),
    ])
    def test_hole_probability_rejects_bad_input(self, args):
        assert derive_physics_parameters().hole_probability(*args) == 0.0
