from panotour.errors import TourError, ValidationError, NotFoundError, NotReadyError, LoadFailedError
from panotour.config import ViewerConfig
from panotour.models import Tour, Scene, InitialView, Position, SceneLinkHotspot, InfoHotspot, MediaHotspot
from panotour.view_state import ViewState, normalize_yaw, clamp_pitch, clamp_fov
from panotour.graph import TourGraph
from panotour.autorotate import AutoRotateTimer
from panotour.resolution import HotspotResolver, NavigateAction, DisplayAction
from panotour.session import TourSession

__version__ = "0.1.0"
