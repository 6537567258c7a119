import logging

from panotour.errors import NotFoundError, ValidationError
from panotour.models import KIND_SCENE_LINK, Scene, Tour, hotspot_from_record, problem

logger = logging.getLogger(__name__)


class TourGraph:
    """Indexed, read-only snapshot of one tour: scenes by id and hotspots by owning scene.

    Links may form cycles and scenes may be unreachable; only link targets
    have to exist. Build it with `TourGraph.load`, which either returns a
    complete graph or raises `ValidationError` listing every problem found.
    """

    def __init__(self, tour, scenes, hotspots_by_scene):
        self.tour = tour
        self._scenes = {s.id: s for s in scenes}
        self._ordered = sorted(scenes, key=lambda s: s.order_index)
        self._hotspots = hotspots_by_scene

    @classmethod
    def load(cls, tour, scenes, hotspots_by_scene=None):
        if not isinstance(tour, Tour):
            tour = Tour.from_record(tour)
        problems = []

        parsed_scenes = []
        seen_ids = set()
        seen_order = {}
        for rec in scenes or []:
            try:
                scene = rec if isinstance(rec, Scene) else Scene.from_record(rec)
            except ValidationError as e:
                problems.extend(e.problems)
                continue
            if scene.id in seen_ids:
                problems.append(problem(scene.id, "id", "unique scene id", scene.id, f"Duplicate scene id {scene.id}"))
                continue
            if scene.tour_id and scene.tour_id != tour.id:
                problems.append(
                    problem(scene.id, "tour_id", tour.id, scene.tour_id, f"Scene {scene.id} belongs to another tour")
                )
                continue
            if scene.order_index in seen_order:
                problems.append(
                    problem(
                        scene.id,
                        "order_index",
                        "unique order_index",
                        scene.order_index,
                        f"Scene {scene.id} shares order_index {scene.order_index} with {seen_order[scene.order_index]}",
                    )
                )
            seen_ids.add(scene.id)
            seen_order[scene.order_index] = scene.id
            parsed_scenes.append(scene)

        if not parsed_scenes and not problems:
            problems.append(problem(tour.id, "scenes", "at least one scene", 0, f"Tour {tour.id} has no scenes"))

        grouped = {s.id: [] for s in parsed_scenes}
        for scene_id, items in (hotspots_by_scene or {}).items():
            if scene_id not in seen_ids:
                if items:
                    problems.append(
                        problem(scene_id, "scene_id", "scene of this tour", scene_id, f"Hotspots reference unknown scene {scene_id}")
                    )
                continue
            for rec in items or []:
                try:
                    hs = hotspot_from_record(rec, scene_id=scene_id)
                except ValidationError as e:
                    problems.extend(e.problems)
                    continue
                if hs.scene_id and hs.scene_id != scene_id:
                    problems.append(
                        problem(hs.id, "scene_id", scene_id, hs.scene_id, f"Hotspot {hs.id} is listed under the wrong scene")
                    )
                    continue
                if hs.kind == KIND_SCENE_LINK and hs.target_scene_id not in seen_ids:
                    problems.append(
                        problem(
                            hs.id,
                            "target_scene_id",
                            "scene of this tour",
                            hs.target_scene_id,
                            f"Hotspot {hs.id} links to missing scene {hs.target_scene_id}",
                        )
                    )
                    continue
                grouped[scene_id].append(hs)

        if problems:
            logger.warning("Tour %s rejected: %d problem(s)", tour.id, len(problems))
            raise ValidationError(
                f"Tour {tour.id} failed validation ({len(problems)} problem(s))", problems=problems, tour_id=tour.id
            )

        graph = cls(tour, parsed_scenes, {sid: tuple(items) for sid, items in grouped.items()})
        logger.info(
            "Loaded tour %s: %d scenes, %d hotspots",
            tour.id,
            len(parsed_scenes),
            sum(len(v) for v in grouped.values()),
        )
        return graph

    @property
    def scenes(self):
        return list(self._ordered)

    @property
    def scene_ids(self):
        return [s.id for s in self._ordered]

    def __contains__(self, scene_id):
        return scene_id in self._scenes

    def __len__(self):
        return len(self._ordered)

    def get_scene(self, scene_id):
        try:
            return self._scenes[scene_id]
        except (KeyError, TypeError):
            raise NotFoundError(f"Scene {scene_id} not found in tour {self.tour.id}", scene_id=scene_id, tour_id=self.tour.id)

    def get_hotspots(self, scene_id):
        return self._hotspots.get(scene_id, ())

    def get_hotspot(self, scene_id, hotspot_id):
        for hs in self.get_hotspots(scene_id):
            if hs.id == hotspot_id:
                return hs
        raise NotFoundError(f"Hotspot {hotspot_id} not found in scene {scene_id}", hotspot_id=hotspot_id, scene_id=scene_id)

    def get_first_scene(self):
        return self._ordered[0]

    def index_of(self, scene_id):
        return self._ordered.index(self.get_scene(scene_id))

    def scene_titles(self):
        return {s.id: s.title for s in self._ordered}

    def links_from(self, scene_id):
        return [hs.target_scene_id for hs in self.get_hotspots(scene_id) if hs.kind == KIND_SCENE_LINK]

    def unreachable_from(self, scene_id):
        """Scenes that no chain of scene links reaches from `scene_id`. Diagnostic only."""
        start = self.get_scene(scene_id).id
        seen = {start}
        stack = [start]
        while stack:
            for target in self.links_from(stack.pop()):
                if target not in seen:
                    seen.add(target)
                    stack.append(target)
        return [s.id for s in self._ordered if s.id not in seen]
