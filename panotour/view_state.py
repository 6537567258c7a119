from panotour.config import ViewerConfig
from panotour.models import safe_float


def normalize_yaw(yaw):
    """Wrap any yaw into [0, 360)."""
    out = safe_float(yaw, 0.0) % 360.0
    # -1e-17 % 360 rounds to 360.0
    if out >= 360.0:
        out = 0.0
    return out


def clamp_pitch(pitch):
    return min(90.0, max(-90.0, safe_float(pitch, 0.0)))


def clamp_fov(fov, min_fov, max_fov, default=None):
    if default is None:
        default = (min_fov + max_fov) / 2.0
    return min(max_fov, max(min_fov, safe_float(fov, default)))


class ViewState:
    """Camera orientation handed to the panorama viewer.

    Every write goes through the same normalization, so readers always see an
    in-range triple.
    """

    def __init__(self, config=None):
        self.config = config or ViewerConfig()
        self.yaw = 0.0
        self.pitch = 0.0
        self.fov = self.config.default_fov

    def set(self, yaw, pitch, fov):
        self.yaw = normalize_yaw(yaw)
        self.pitch = clamp_pitch(pitch)
        self.fov = clamp_fov(fov, self.config.min_fov, self.config.max_fov, self.config.default_fov)
        return self

    def seed_from(self, scene):
        view = scene.initial_view
        return self.set(view.yaw, view.pitch, view.fov)

    def rotate(self, delta_yaw):
        self.yaw = normalize_yaw(self.yaw + safe_float(delta_yaw, 0.0))
        return self

    def as_tuple(self):
        return (self.yaw, self.pitch, self.fov)

    def to_dict(self):
        return {"yaw": self.yaw, "pitch": self.pitch, "fov": self.fov}

    def __repr__(self):
        return f"ViewState(yaw={self.yaw:.2f}, pitch={self.pitch:.2f}, fov={self.fov:.2f})"
