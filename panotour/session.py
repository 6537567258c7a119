"""Navigation state machine for one viewer session.

A session starts in ``loading``, reaches ``viewing`` once a tour snapshot has
been fetched and validated, and drops to ``error`` if the load fails. Every
scene id that enters ``viewing`` has already been checked against the graph,
and a transition either completes fully (scene, view, hotspots, timer) or
leaves the previous state untouched.
"""
import asyncio
import logging
import uuid

from panotour.autorotate import AutoRotateTimer, monotonic_ms
from panotour.config import ViewerConfig
from panotour.errors import LoadFailedError, NotFoundError, NotReadyError, TourError, ValidationError
from panotour.graph import TourGraph
from panotour.resolution import HotspotResolver, NavigateAction, resolve_action
from panotour.view_state import ViewState

logger = logging.getLogger(__name__)

LOADING = "loading"
VIEWING = "viewing"
ERROR = "error"
CLOSED = "closed"

REASON_LOAD_FAILED = "load_failed"
REASON_VALIDATION = "validation_failed"
REASON_TOUR_NOT_FOUND = "tour_not_found"
REASON_SCENE_NOT_FOUND = "scene_not_found"


class TourSession:
    def __init__(self, repository, config=None, clock=None):
        self.id = uuid.uuid4().hex
        self.repository = repository
        self.config = config or ViewerConfig()
        self.clock = clock or monotonic_ms
        self.status = LOADING
        self.error_reason = None
        self.error = None
        self.tour_id = None
        self.graph = None
        self.resolver = None
        self.current_scene_id = None
        self.hotspots = []
        self.view = ViewState(self.config)
        self.timer = self._new_timer()
        self._load_token = 0

    def _new_timer(self):
        return AutoRotateTimer(self.config.inactivity_delay_ms, self.config.auto_rotate_rate, clock=self.clock)

    def __repr__(self):
        return f"<TourSession {self.id} {self.status} scene={self.current_scene_id}>"

    # Loading

    async def load(self, tour_id, scene_id=None):
        """Fetch, validate and enter the tour; returns the entered scene id.

        Returns None when a newer `load()` or `teardown()` overtook this one
        while it was waiting on the repository.
        """
        if self.status == CLOSED:
            raise NotReadyError("Session is closed", status=self.status)
        self._load_token += 1
        token = self._load_token
        self.timer.cancel()
        self.status = LOADING
        self.error_reason = None
        self.error = None
        self.tour_id = tour_id
        self.graph = None
        self.resolver = None
        self.current_scene_id = None
        self.hotspots = []
        logger.info("Loading tour %s (session %s)", tour_id, self.id)

        try:
            tour = await self.repository.fetch_tour(tour_id)
            scenes = list(await self.repository.fetch_scenes(tour_id))
            scene_ids = [rec.get("id") if isinstance(rec, dict) else rec.id for rec in scenes]
            results = await asyncio.gather(*(self.repository.fetch_hotspots(sid) for sid in scene_ids if sid))
        except NotFoundError as e:
            if token == self._load_token and self.status != CLOSED:
                self._fail(REASON_TOUR_NOT_FOUND, e)
            raise
        except (LoadFailedError, OSError) as e:
            err = e if isinstance(e, LoadFailedError) else LoadFailedError(f"Could not load tour {tour_id}: {e}", tour_id=tour_id)
            if token == self._load_token and self.status != CLOSED:
                self._fail(REASON_LOAD_FAILED, err)
            if err is e:
                raise
            raise err from e

        if token != self._load_token or self.status == CLOSED:
            logger.debug("Discarding superseded load of tour %s", tour_id)
            return None

        hotspots_by_scene = dict(zip([sid for sid in scene_ids if sid], results))
        try:
            graph = TourGraph.load(tour, scenes, hotspots_by_scene)
        except ValidationError as e:
            self._fail(REASON_VALIDATION, e)
            raise

        if scene_id is None:
            entry = graph.get_first_scene()
        else:
            try:
                entry = graph.get_scene(scene_id)
            except NotFoundError as e:
                self._fail(REASON_SCENE_NOT_FOUND, e)
                raise

        self.graph = graph
        self.resolver = HotspotResolver(graph, self._activate_from_callback)
        self.timer = self._new_timer()
        self._enter(entry.id)
        self.status = VIEWING
        return entry.id

    def _fail(self, reason, exc):
        logger.warning("Session %s entered error state (%s): %s", self.id, reason, exc)
        self.timer.cancel()
        self.status = ERROR
        self.error_reason = reason
        self.error = exc
        self.graph = None
        self.resolver = None
        self.current_scene_id = None
        self.hotspots = []

    def _require_viewing(self):
        if self.status != VIEWING:
            raise NotReadyError(f"Session is {self.status}, not viewing", status=self.status)

    def _enter(self, scene_id):
        scene = self.graph.get_scene(scene_id)
        hotspots = self.resolver.resolve(scene.id)
        previous = self.current_scene_id
        self.current_scene_id = scene.id
        self.hotspots = hotspots
        self.view.seed_from(scene)
        self.timer.restart()
        logger.debug("Session %s: %s -> %s", self.id, previous, scene.id)
        return scene

    # Navigation

    def activate_hotspot(self, hotspot):
        """Run a hotspot of the current scene.

        Scene links move to the target and reset the camera to its authored
        view. Info and media hotspots only produce a DisplayAction.
        """
        self._require_viewing()
        hotspot_id = hotspot if isinstance(hotspot, str) else hotspot.id
        hs = self.graph.get_hotspot(self.current_scene_id, hotspot_id)
        action = resolve_action(hs, self.current_scene_id)
        if isinstance(action, NavigateAction):
            self._enter(action.target_scene_id)
        else:
            self.timer.interaction()
        return action

    on_hotspot_activated = activate_hotspot

    def _activate_from_callback(self, scene_id, hotspot_id):
        self._require_viewing()
        if scene_id != self.current_scene_id:
            raise NotFoundError(
                f"Hotspot {hotspot_id} belongs to scene {scene_id}, not the current scene",
                hotspot_id=hotspot_id,
                expected=self.current_scene_id,
                actual=scene_id,
            )
        return self.activate_hotspot(hotspot_id)

    def select_scene(self, scene_id):
        self._require_viewing()
        scene = self.graph.get_scene(scene_id)
        self._enter(scene.id)
        return scene.id

    def step_relative(self, step):
        if step not in (1, -1):
            raise ValueError(f"step must be +1 or -1, got {step!r}")
        self._require_viewing()
        ordered = self.graph.scenes
        idx = self.graph.index_of(self.current_scene_id) + step
        if idx < 0 or idx >= len(ordered):
            return None
        return self._enter(ordered[idx].id).id

    def on_user_interaction(self):
        self._require_viewing()
        self.timer.interaction()

    def drag(self, yaw, pitch, fov=None):
        self._require_viewing()
        self.view.set(yaw, pitch, self.view.fov if fov is None else fov)
        self.timer.interaction()
        return self.view

    def tick(self):
        if self.status != VIEWING:
            return None
        delta = self.timer.tick()
        if delta:
            self.view.rotate(delta)
        return self.view

    def teardown(self):
        self.timer.cancel()
        if self.resolver is not None:
            self.resolver.clear()
        if self.status != CLOSED:
            logger.debug("Session %s closed", self.id)
        self.status = CLOSED
        self._load_token += 1

    # Read side

    @property
    def current_scene(self):
        self._require_viewing()
        return self.graph.get_scene(self.current_scene_id)

    def position(self):
        self._require_viewing()
        return self.graph.index_of(self.current_scene_id), len(self.graph)

    def scene_picker(self):
        self._require_viewing()
        return [
            {
                "id": s.id,
                "title": s.title,
                "thumbnailUrl": s.thumbnail_url,
                "orderIndex": s.order_index,
                "current": s.id == self.current_scene_id,
            }
            for s in self.graph.scenes
        ]

    def viewer_params(self):
        scene = self.current_scene
        return {
            "sceneId": scene.id,
            "title": scene.title,
            "imageUrl": scene.image_url,
            "thumbnailUrl": scene.thumbnail_url,
            "yaw": self.view.yaw,
            "pitch": self.view.pitch,
            "fov": self.view.fov,
            "minFov": self.config.min_fov,
            "maxFov": self.config.max_fov,
            "hotspots": [hs.to_viewer_dict() for hs in self.hotspots],
            "autoRotateRate": self.config.auto_rotate_rate,
        }

    def describe(self):
        out = {"id": self.id, "status": self.status, "tour_id": self.tour_id}
        if self.status == ERROR:
            out["reason"] = self.error_reason
            if isinstance(self.error, TourError):
                out["error"] = self.error.to_dict()
        if self.status == VIEWING:
            index, count = self.position()
            out.update(
                {
                    "scene_id": self.current_scene_id,
                    "index": index,
                    "count": count,
                    "auto_rotating": self.timer.is_rotating,
                    "view": self.view.to_dict(),
                }
            )
        return out
