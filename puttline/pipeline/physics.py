"""Physics parameter model: green settings → ball-roll coefficients.

The friction coefficient is obtained by inverting the stimpmeter: the ball
leaves the ramp at 1.83 m/s and must stop after exactly the declared reading
on a flat green.  The roll is split into the same two phases the simulator
integrates (skid for the first 20 % of the distance at 1.8× friction, pure
rolling at 5/7 for the rest).  Those phase constants are defined once, here,
and imported by :mod:`puttline.pipeline.simulate`; changing them here
re-derives both sides together.

Capture thresholds come from published lip-out research (Bristol) and
Pelz-style short-game studies.
"""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict

from puttline.core.settings import GrassType, PhysicsSettings

# ── shared phase model ────────────────────────────────────────────────
STIMP_RELEASE_SPEED = 1.83        # m/s off the stimpmeter ramp
FEET_TO_METRES = 0.3048
SKID_DISTANCE_RATIO = 0.20
SKID_FRICTION_MULTIPLIER = 1.8
ROLLING_FACTOR = 5.0 / 7.0        # solid sphere, I = 2/5 m r²

# Average flat deceleration (in units of μ·g) over a whole skid + roll.
EFFECTIVE_DECEL_FACTOR = (
    SKID_DISTANCE_RATIO * SKID_FRICTION_MULTIPLIER
    + (1.0 - SKID_DISTANCE_RATIO) * ROLLING_FACTOR
)
# Same average for the along-slope gravity term (g·sinθ skidding, 5/7 rolling).
EFFECTIVE_GRAVITY_FACTOR = SKID_DISTANCE_RATIO + (1.0 - SKID_DISTANCE_RATIO) * ROLLING_FACTOR

STANDARD_GRAVITY = 9.80665
EARTH_RADIUS = 6_371_000.0

# ── regulation equipment ──────────────────────────────────────────────
BALL_MASS = 0.04593               # kg
BALL_RADIUS = 0.02135             # m
HOLE_RADIUS = 0.054               # m
HOLE_DEPTH = 0.102                # m

MAX_CAPTURE_SPEED = 1.63          # m/s, nothing drops above this
SIMPLE_CAPTURE_SPEED = 1.31       # m/s, free-fall capture
OPTIMAL_CAPTURE_SPEED = 0.8       # m/s, ideal entry

GRAIN_REFERENCE_SPEED = 0.5       # m/s, deflection halves at this speed
MOISTURE_FRICTION_GAIN = 0.4
TEMPERATURE_GAIN = 0.004          # per °C, ≈ 2 % per 5 °C
TEMPERATURE_BASELINE = 20.0


def gravity_at_altitude(altitude_m: float) -> float:
    return STANDARD_GRAVITY * (EARTH_RADIUS / (EARTH_RADIUS + altitude_m)) ** 2


def moisture_factor(moisture: float) -> float:
    return 1.0 + MOISTURE_FRICTION_GAIN * min(max(moisture, 0.0), 1.0)


def temperature_factor(temperature_c: float) -> float:
    """Warm greens are faster: −0.4 %/°C around 20 °C, bounded to ±15 %."""
    f = 1.0 - TEMPERATURE_GAIN * (temperature_c - TEMPERATURE_BASELINE)
    return min(max(f, 0.85), 1.15)


def friction_from_stimp(
    stimp_feet: float,
    *,
    gravity: float = STANDARD_GRAVITY,
    grain_factor: float = 0.0,
    moisture: float = 0.0,
    temperature_c: float = TEMPERATURE_BASELINE,
) -> float:
    """Friction coefficient that reproduces *stimp_feet* on a flat green.

    The stimpmeter reading is the mean of a roll with the grain and one
    against it.  With friction scaled by ``1 ∓ grain_factor`` in those two
    directions, dividing by ``1 − grain_factor²`` makes that mean come out
    at the declared distance.  A single roll across the grain comes up about
    4 % short on bermuda (grain factor 0.2); only the with/against mean is
    calibrated.
    """
    distance = stimp_feet * FEET_TO_METRES
    base = STIMP_RELEASE_SPEED ** 2 / (2.0 * gravity * EFFECTIVE_DECEL_FACTOR * distance)
    base /= 1.0 - grain_factor ** 2
    return base * moisture_factor(moisture) * temperature_factor(temperature_c)


class PhysicsParameters(BaseModel):
    """Immutable coefficient set read by the simulator's hot loop."""

    model_config = ConfigDict(frozen=True)

    stimpmeter_speed: float
    grass_type: GrassType
    moisture: float
    temperature_c: float
    altitude_m: float

    gravity: float
    friction_coefficient: float
    rolling_resistance: float
    grain_factor: float
    grain_deflection_factor: float
    grain_direction: tuple[float, float]

    time_step: float = 0.005
    max_simulation_time: float = 8.0
    stop_threshold: float = 0.01

    ball_mass: float = BALL_MASS
    ball_radius: float = BALL_RADIUS
    hole_radius: float = HOLE_RADIUS
    hole_depth: float = HOLE_DEPTH
    skid_distance_ratio: float = SKID_DISTANCE_RATIO
    skid_friction_multiplier: float = SKID_FRICTION_MULTIPLIER

    @property
    def ball_moment_of_inertia(self) -> float:
        return 0.4 * self.ball_mass * self.ball_radius ** 2

    @property
    def effective_hole_radius(self) -> float:
        """Distance from the hole centre at which the ball's centre is over the cup."""
        return self.hole_radius - self.ball_radius

    @property
    def stimp_friction(self) -> float:
        """Direction-averaged friction that matches the stimp reading."""
        return self.friction_coefficient * (1.0 - self.grain_factor ** 2)

    # ── decelerations ─────────────────────────────────────────────────
    def skid_deceleration(self, slope_angle: float = 0.0) -> float:
        return self.friction_coefficient * self.skid_friction_multiplier * self.gravity * math.cos(slope_angle)

    def rolling_deceleration(self, slope_angle: float = 0.0) -> float:
        return self.rolling_resistance * self.gravity * math.cos(slope_angle)

    # ── distance ↔ speed ──────────────────────────────────────────────
    def distance_for_speed(self, speed: float, rise: float = 0.0) -> float:
        """Roll-out distance for a launch *speed*.

        *rise* is the elevation gained per metre travelled (negative downhill).
        Returns ``inf`` when the slope out-pulls friction.
        """
        decel = self.gravity * (
            EFFECTIVE_DECEL_FACTOR * self.stimp_friction + EFFECTIVE_GRAVITY_FACTOR * rise
        )
        if decel <= 0:
            return math.inf
        return speed * speed / (2.0 * decel)

    def speed_for_distance(self, distance: float, rise: float = 0.0) -> float:
        """Launch speed that rolls *distance* metres while climbing ``rise·distance``."""
        energy = self.gravity * distance * (
            EFFECTIVE_DECEL_FACTOR * self.stimp_friction + EFFECTIVE_GRAVITY_FACTOR * rise
        )
        return math.sqrt(max(2.0 * energy, 0.0))

    # ── grain ─────────────────────────────────────────────────────────
    def grain_friction_factor(self, dx: float, dz: float) -> float:
        """Friction multiplier for travel along the unit vector (dx, dz)."""
        gx, gz = self.grain_direction
        return 1.0 - self.grain_factor * (dx * gx + dz * gz)

    def grain_deflection(self, speed: float, dx: float, dz: float) -> tuple[float, float]:
        """Lateral acceleration from cross-grain travel.

        Zero along the grain, strongest across it, fading with speed.
        """
        if self.grain_deflection_factor == 0.0:
            return 0.0, 0.0
        gx, gz = self.grain_direction
        along = dx * gx + dz * gz
        px = gx - along * dx
        pz = gz - along * dz
        scale = self.grain_deflection_factor * self.gravity / (1.0 + speed / GRAIN_REFERENCE_SPEED)
        return px * scale, pz * scale

    # ── hole capture ──────────────────────────────────────────────────
    def capture_radius(self, speed: float) -> float:
        """Effective capture radius, shrinking quadratically with entry speed."""
        ratio = speed / MAX_CAPTURE_SPEED
        return self.effective_hole_radius * (1.0 - 0.5 * ratio * ratio)

    def can_capture(self, speed: float, offset: float) -> bool:
        if not speed < MAX_CAPTURE_SPEED:
            return False
        if not offset < self.effective_hole_radius:
            return False
        return offset < self.capture_radius(speed)

    def hole_probability(self, speed: float, offset: float, angle: float) -> float:
        """Probability of dropping for a given entry speed, offset and angle."""
        if not (math.isfinite(speed) and math.isfinite(offset) and math.isfinite(angle)):
            return 0.0
        if speed < 0 or offset < 0:
            return 0.0
        if not self.can_capture(speed, offset):
            return 0.0

        offset_score = max(0.0, 1.0 - offset / self.effective_hole_radius)
        speed_dev = abs(speed - OPTIMAL_CAPTURE_SPEED) / OPTIMAL_CAPTURE_SPEED
        speed_score = max(0.0, 1.0 - 0.5 * speed_dev)
        # widest entry angle that still reaches the capture zone at this speed
        max_angle = math.asin(min(1.0, self.capture_radius(speed) / self.effective_hole_radius))
        angle_score = max(0.0, 1.0 - abs(angle) / max(max_angle, 0.01))
        return offset_score * speed_score * angle_score


def derive_physics_parameters(settings: PhysicsSettings | None = None) -> PhysicsParameters:
    """Turn user settings into the simulator's coefficient set."""
    settings = settings or PhysicsSettings()
    grass = settings.grass_type
    gravity = gravity_at_altitude(settings.altitude_m)
    friction = friction_from_stimp(
        settings.stimpmeter_speed,
        gravity=gravity,
        grain_factor=grass.grain_factor,
        moisture=settings.moisture,
        temperature_c=settings.temperature_c,
    )
    theta = math.radians(settings.grain_direction_deg)
    return PhysicsParameters(
        stimpmeter_speed=settings.stimpmeter_speed,
        grass_type=grass,
        moisture=settings.moisture,
        temperature_c=settings.temperature_c,
        altitude_m=settings.altitude_m,
        gravity=gravity,
        friction_coefficient=friction,
        rolling_resistance=ROLLING_FACTOR * friction,
        grain_factor=grass.grain_factor,
        grain_deflection_factor=grass.grain_deflection,
        grain_direction=(math.cos(theta), math.sin(theta)),
    )
