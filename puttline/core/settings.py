"""User-facing configuration for the physics model and the putt solver.

Angles are in degrees here and nowhere else; the pipeline converts them to
radians / unit vectors when it derives :class:`PhysicsParameters`.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class GrassType(str, Enum):
    BENT = "bent"
    BERMUDA = "bermuda"

    @property
    def grain_factor(self) -> float:
        """Friction bias with / against the grain (0 = none)."""
        return {GrassType.BENT: 0.0, GrassType.BERMUDA: 0.20}[self]

    @property
    def grain_deflection(self) -> float:
        """Cross-grain lateral push as a fraction of g at rest."""
        return {GrassType.BENT: 0.0, GrassType.BERMUDA: 0.006}[self]


class GreenCondition(str, Enum):
    DRY = "dry"
    NORMAL = "normal"
    WET = "wet"

    @property
    def moisture_level(self) -> float:
        return {GreenCondition.DRY: 0.0, GreenCondition.NORMAL: 0.15, GreenCondition.WET: 0.4}[self]


class PhysicsSettings(BaseModel):
    """Green and environment inputs from the configuration subsystem."""

    stimpmeter_speed: float = Field(default=10.0, ge=6.0, le=14.0, description="feet")
    grass_type: GrassType = GrassType.BENT
    moisture: float = Field(default=0.0, ge=0.0, le=1.0)
    grain_direction_deg: float = Field(
        default=270.0,
        description="Direction the grain grows, measured in the X/Z plane from +X toward +Z",
    )
    temperature_c: float = Field(default=20.0, ge=-10.0, le=50.0)
    altitude_m: float = Field(default=0.0, ge=0.0, le=5000.0)

    @field_validator("grain_direction_deg")
    @classmethod
    def _wrap_degrees(cls, v: float) -> float:
        return v % 360.0

    def with_condition(self, condition: GreenCondition) -> "PhysicsSettings":
        return self.model_copy(update={"moisture": condition.moisture_level})


class SolverSettings(BaseModel):
    """Search policy.  The thresholds are empirically tuned, not physical."""

    deadline: float = Field(default=4.0, gt=0.0, description="Overall wall-clock budget (s)")
    refinement_window: float = Field(default=1.0, ge=0.0)
    optimal_exit_confidence: float = Field(default=0.90, ge=0.0, le=1.0)
    default_exit_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    angle_steps: int = Field(default=25, ge=3)
    max_angle_deg: float = Field(default=15.0, gt=0.0, le=45.0)
    speed_multipliers: tuple[float, ...] = (0.95, 0.98, 1.0, 1.02, 1.05, 1.08)  # tried nearest 1.0 first
    yield_every: int = Field(default=10, ge=1)


class AnalysisSettings(BaseModel):
    """Combined settings document, as read from a ``--settings`` JSON file."""

    physics: PhysicsSettings = Field(default_factory=PhysicsSettings)
    solver: SolverSettings = Field(default_factory=SolverSettings)
