import asyncio
import unittest

from panotour.config import ViewerConfig
from panotour.errors import LoadFailedError, NotFoundError, NotReadyError, ValidationError
from panotour.resolution import DisplayAction, NavigateAction
from panotour.session import CLOSED, ERROR, LOADING, VIEWING, TourSession
from panotour.test_autorotate import FakeClock


class FakeRepository:
    def __init__(self, tour, scenes, hotspots, fail=None):
        self.tour = tour
        self.scenes = scenes
        self.hotspots = hotspots
        self.fail = fail
        self.gate = None

    async def fetch_tour(self, tour_id):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        if tour_id != self.tour["id"]:
            raise NotFoundError(f"Tour {tour_id} not found", tour_id=tour_id)
        return dict(self.tour)

    async def fetch_scenes(self, tour_id):
        return [dict(s) for s in self.scenes]

    async def fetch_hotspots(self, scene_id):
        return [dict(h) for h in self.hotspots.get(scene_id, [])]


def two_scene_tour():
    tour = {"id": "t1", "title": "Flat"}
    scenes = [
        {"id": "A", "tour_id": "t1", "title": "Hall", "image_360_url": "a.jpg", "order_index": 0,
         "initial_view": {"yaw": 10, "pitch": 5, "fov": 90}},
        {"id": "B", "tour_id": "t1", "title": "Kitchen", "image_360_url": "b.jpg", "order_index": 1,
         "initial_view": {"yaw": 200, "pitch": -10, "fov": 70}},
    ]
    hotspots = {
        "A": [
            {"id": "toB", "scene_id": "A", "type": "scene_link", "target_scene_id": "B", "position": {"yaw": 90, "pitch": 0}},
            {"id": "note", "scene_id": "A", "type": "info", "title": "Fireplace", "description": "Original 1920s tiles",
             "position": {"yaw": 180, "pitch": -5}},
        ],
        "B": [
            {"id": "toA", "scene_id": "B", "type": "scene_link", "target_scene_id": "A", "position": {"yaw": 270, "pitch": 0}},
            {"id": "clip", "scene_id": "B", "type": "media", "media_url": "https://example.com/oven.mp4",
             "position": {"yaw": 10, "pitch": 0}},
        ],
    }
    return tour, scenes, hotspots


class SessionTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        tour, scenes, hotspots = two_scene_tour()
        self.repo = FakeRepository(tour, scenes, hotspots)
        self.clock = FakeClock()
        self.session = TourSession(self.repo, config=ViewerConfig(), clock=self.clock)


class LoadTests(SessionTestCase):
    async def test_load_enters_first_scene_with_its_view(self):
        self.assertEqual(self.session.status, LOADING)
        entered = await self.session.load("t1")
        self.assertEqual(entered, "A")
        self.assertEqual(self.session.status, VIEWING)
        self.assertEqual(self.session.view.as_tuple(), (10.0, 5.0, 90.0))
        self.assertEqual([h.id for h in self.session.hotspots], ["toB", "note"])

    async def test_deep_link_ignores_graph_topology(self):
        await self.session.load("t1", "B")
        self.assertEqual(self.session.current_scene_id, "B")
        self.assertEqual(self.session.view.as_tuple(), (200.0, -10.0, 70.0))

    async def test_unknown_initial_scene_is_error(self):
        with self.assertRaises(NotFoundError):
            await self.session.load("t1", "Z")
        self.assertEqual(self.session.status, ERROR)
        self.assertEqual(self.session.error_reason, "scene_not_found")

    async def test_dangling_target_leaves_error_not_viewing(self):
        self.repo.hotspots["B"].append(
            {"id": "bad", "scene_id": "B", "type": "scene_link", "target_scene_id": "C", "position": {}}
        )
        with self.assertRaises(ValidationError):
            await self.session.load("t1")
        self.assertEqual(self.session.status, ERROR)
        self.assertIsNone(self.session.current_scene_id)
        self.assertTrue(self.session.timer.is_cancelled)

    async def test_transport_failure_is_load_failed(self):
        self.repo.fail = ConnectionError("connection reset")
        with self.assertRaises(LoadFailedError):
            await self.session.load("t1")
        self.assertEqual(self.session.status, ERROR)
        self.assertEqual(self.session.error_reason, "load_failed")

    async def test_navigation_refused_while_loading(self):
        self.repo.gate = asyncio.Event()
        task = asyncio.ensure_future(self.session.load("t1"))
        await asyncio.sleep(0)
        self.assertEqual(self.session.status, LOADING)
        with self.assertRaises(NotReadyError):
            self.session.select_scene("B")
        with self.assertRaises(NotReadyError):
            self.session.step_relative(1)
        self.repo.gate.set()
        await task
        self.assertEqual(self.session.status, VIEWING)

    async def test_teardown_during_load_discards_result(self):
        self.repo.gate = asyncio.Event()
        task = asyncio.ensure_future(self.session.load("t1"))
        await asyncio.sleep(0)
        self.session.teardown()
        self.repo.gate.set()
        self.assertIsNone(await task)
        self.assertEqual(self.session.status, CLOSED)


class NavigationTests(SessionTestCase):
    async def asyncSetUp(self):
        await self.session.load("t1")

    async def test_scene_link_reseeds_view_regardless_of_drag(self):
        self.session.drag(55, 30)
        action = self.session.activate_hotspot("toB")
        self.assertEqual(action, NavigateAction(hotspot_id="toB", from_scene_id="A", target_scene_id="B"))
        self.assertEqual(self.session.current_scene_id, "B")
        self.assertEqual(self.session.view.as_tuple(), (200.0, -10.0, 70.0))

    async def test_info_and_media_do_not_move(self):
        self.session.drag(45, 0)
        action = self.session.activate_hotspot("note")
        self.assertIsInstance(action, DisplayAction)
        self.assertEqual(action.description, "Original 1920s tiles")
        self.assertEqual(self.session.current_scene_id, "A")
        self.assertEqual(self.session.view.yaw, 45.0)
        self.session.select_scene("B")
        media = self.session.on_hotspot_activated("clip")
        self.assertEqual(media.media_url, "https://example.com/oven.mp4")
        self.assertEqual(self.session.current_scene_id, "B")

    async def test_hotspot_from_other_scene_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.session.activate_hotspot("toA")
        self.assertEqual(self.session.current_scene_id, "A")

    async def test_select_unknown_scene_keeps_state(self):
        self.session.drag(300, 12)
        with self.assertRaises(NotFoundError):
            self.session.select_scene("nope")
        self.assertEqual(self.session.status, VIEWING)
        self.assertEqual(self.session.current_scene_id, "A")
        self.assertEqual(self.session.view.as_tuple(), (300.0, 12.0, 90.0))

    async def test_step_relative_stops_at_both_ends(self):
        self.assertIsNone(self.session.step_relative(-1))
        self.assertEqual(self.session.current_scene_id, "A")
        self.assertEqual(self.session.step_relative(1), "B")
        self.assertIsNone(self.session.step_relative(1))
        self.assertEqual(self.session.current_scene_id, "B")
        with self.assertRaises(ValueError):
            self.session.step_relative(2)

    async def test_link_then_step_back_scenario(self):
        self.assertEqual(self.session.view.as_tuple(), (10.0, 5.0, 90.0))
        self.session.activate_hotspot("toB")
        self.assertEqual(self.session.view.as_tuple(), (200.0, -10.0, 70.0))
        self.session.drag(0, 0)
        self.assertEqual(self.session.step_relative(-1), "A")
        self.assertEqual(self.session.view.as_tuple(), (10.0, 5.0, 90.0))

    async def test_callbacks_bind_scene_at_resolution(self):
        on_to_b = self.session.hotspots[0].on_activate
        self.assertIs(on_to_b, self.session.resolver.callback_for("A", "toB"))
        on_to_b()
        self.assertEqual(self.session.current_scene_id, "B")
        # The callback was resolved for A; the viewer is now on B.
        with self.assertRaises(NotFoundError):
            on_to_b()
        self.session.hotspots[0].on_activate()
        self.assertEqual(self.session.current_scene_id, "A")

    async def test_viewer_params(self):
        params = self.session.viewer_params()
        self.assertEqual(params["imageUrl"], "a.jpg")
        self.assertEqual((params["yaw"], params["pitch"], params["fov"]), (10.0, 5.0, 90.0))
        self.assertEqual(params["autoRotateRate"], -2.0)
        labels = [h["label"] for h in params["hotspots"]]
        self.assertEqual(labels, ["Go to Kitchen", "Fireplace"])
        self.assertTrue(callable(params["hotspots"][0]["onActivate"]))
        self.assertEqual(self.session.position(), (0, 2))
        self.assertEqual([s["current"] for s in self.session.scene_picker()], [True, False])

    async def test_reload_picks_up_new_image(self):
        self.session.select_scene("B")
        self.repo.scenes[1]["image_360_url"] = "b-edited.jpg"
        self.assertEqual(self.session.viewer_params()["imageUrl"], "b.jpg")
        await self.session.load("t1", "B")
        self.assertEqual(self.session.viewer_params()["imageUrl"], "b-edited.jpg")


class AutoRotateSessionTests(SessionTestCase):
    async def asyncSetUp(self):
        await self.session.load("t1")

    async def test_idle_rotation_drag_and_transition(self):
        self.clock.advance(2999)
        self.session.tick()
        self.assertFalse(self.session.timer.is_rotating)
        self.clock.advance(1)
        self.session.tick()
        self.assertTrue(self.session.timer.is_rotating)
        self.clock.advance(1000)
        self.session.tick()
        self.assertAlmostEqual(self.session.view.yaw, 8.0)
        self.assertEqual(self.session.view.pitch, 5.0)

        self.session.drag(100, 0)
        self.assertFalse(self.session.timer.is_rotating)
        self.clock.advance(3000)
        self.session.tick()
        self.assertTrue(self.session.timer.is_rotating)

        self.session.activate_hotspot("toB")
        self.assertFalse(self.session.timer.is_rotating)
        self.assertEqual(self.session.view.yaw, 200.0)
        self.clock.advance(2000)
        self.session.tick()
        self.assertEqual(self.session.view.yaw, 200.0)
        self.clock.advance(1000)
        self.session.tick()
        self.assertTrue(self.session.timer.is_rotating)

    async def test_teardown_cancels_timer(self):
        timer = self.session.timer
        self.session.teardown()
        self.session.teardown()
        self.clock.advance(10000)
        self.assertIsNone(self.session.tick())
        self.assertTrue(timer.is_cancelled)
        with self.assertRaises(NotReadyError):
            self.session.on_user_interaction()
        with self.assertRaises(NotReadyError):
            await self.session.load("t1")


if __name__ == "__main__":
    unittest.main()
