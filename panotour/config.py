import os
from dataclasses import dataclass

DEFAULT_MIN_FOV = 30.0
DEFAULT_MAX_FOV = 120.0
DEFAULT_FOV = 90.0
DEFAULT_INACTIVITY_DELAY_MS = 3000
# Degrees per second; negative turns the camera to the left like the player's autoRotate.
DEFAULT_AUTO_ROTATE_RATE = -2.0


def env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class ViewerConfig:
    min_fov: float = DEFAULT_MIN_FOV
    max_fov: float = DEFAULT_MAX_FOV
    default_fov: float = DEFAULT_FOV
    inactivity_delay_ms: float = DEFAULT_INACTIVITY_DELAY_MS
    auto_rotate_rate: float = DEFAULT_AUTO_ROTATE_RATE

    def __post_init__(self):
        if self.min_fov > self.max_fov:
            raise ValueError(f"min_fov ({self.min_fov}) must not exceed max_fov ({self.max_fov})")
        if self.inactivity_delay_ms < 0:
            raise ValueError("inactivity_delay_ms must be >= 0")
        clamped = min(self.max_fov, max(self.min_fov, self.default_fov))
        if clamped != self.default_fov:
            object.__setattr__(self, "default_fov", clamped)

    @classmethod
    def from_env(cls):
        return cls(
            min_fov=env_float("PANOTOUR_MIN_FOV", DEFAULT_MIN_FOV),
            max_fov=env_float("PANOTOUR_MAX_FOV", DEFAULT_MAX_FOV),
            default_fov=env_float("PANOTOUR_DEFAULT_FOV", DEFAULT_FOV),
            inactivity_delay_ms=env_float("PANOTOUR_INACTIVITY_DELAY_MS", DEFAULT_INACTIVITY_DELAY_MS),
            auto_rotate_rate=env_float("PANOTOUR_AUTO_ROTATE_RATE", DEFAULT_AUTO_ROTATE_RATE),
        )
