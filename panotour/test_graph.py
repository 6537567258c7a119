import unittest

from panotour.errors import NotFoundError, ValidationError
from panotour.graph import TourGraph
from panotour.models import InfoHotspot, MediaHotspot, SceneLinkHotspot, hotspot_from_record

TOUR = {"id": "t1", "title": "House", "is_published": True}


def scene(sid, order, **extra):
    rec = {
        "id": sid,
        "tour_id": "t1",
        "title": sid.upper(),
        "image_360_url": f"/media/{sid}.jpg",
        "order_index": order,
        "initial_view": {"yaw": 10 * order, "pitch": 0, "fov": 90},
    }
    rec.update(extra)
    return rec


def link(hid, owner, target, yaw=90):
    return {"id": hid, "scene_id": owner, "type": "scene_link", "target_scene_id": target, "position": {"yaw": yaw, "pitch": 0}}


class HotspotRecordTests(unittest.TestCase):
    def test_kinds_map_to_variants(self):
        self.assertIsInstance(hotspot_from_record(link("h", "a", "b")), SceneLinkHotspot)
        info = hotspot_from_record({"id": "i", "scene_id": "a", "type": "info", "target_scene_id": "b", "position": '{"yaw": 5}'})
        self.assertIsInstance(info, InfoHotspot)
        self.assertFalse(hasattr(info, "target_scene_id"))
        self.assertEqual(info.position.yaw, 5.0)
        media = hotspot_from_record({"id": "m", "scene_id": "a", "type": "media", "media_url": "v.mp4"})
        self.assertIsInstance(media, MediaHotspot)

    def test_per_kind_required_fields(self):
        with self.assertRaises(ValidationError):
            hotspot_from_record({"id": "h", "scene_id": "a", "type": "scene_link"})
        with self.assertRaises(ValidationError):
            hotspot_from_record({"id": "m", "scene_id": "a", "type": "media"})
        with self.assertRaises(ValidationError) as ctx:
            hotspot_from_record({"id": "x", "scene_id": "a", "type": "portal"})
        self.assertEqual(ctx.exception.problems[0]["actual"], "portal")


class TourGraphTests(unittest.TestCase):
    def test_load_indexes_scenes_and_hotspots(self):
        graph = TourGraph.load(TOUR, [scene("b", 1), scene("a", 0)], {"a": [link("h1", "a", "b")]})
        self.assertEqual(graph.scene_ids, ["a", "b"])
        self.assertEqual(graph.get_scene("b").title, "B")
        self.assertEqual([h.id for h in graph.get_hotspots("a")], ["h1"])
        self.assertEqual(graph.get_hotspots("b"), ())
        self.assertEqual(graph.get_first_scene().id, "a")

    def test_cycles_and_unreachable_scenes_are_allowed(self):
        graph = TourGraph.load(
            TOUR,
            [scene("a", 0), scene("b", 1), scene("c", 2)],
            {"a": [link("ab", "a", "b")], "b": [link("ba", "b", "a")]},
        )
        self.assertEqual(graph.links_from("b"), ["a"])
        self.assertEqual(graph.unreachable_from("a"), ["c"])

    def test_dangling_link_rejects_whole_load(self):
        with self.assertRaises(ValidationError) as ctx:
            TourGraph.load(TOUR, [scene("a", 0)], {"a": [link("h1", "a", "ghost")]})
        problem = ctx.exception.problems[0]
        self.assertEqual(problem["id"], "h1")
        self.assertEqual(problem["actual"], "ghost")

    def test_media_without_url_rejected(self):
        with self.assertRaises(ValidationError):
            TourGraph.load(TOUR, [scene("a", 0)], {"a": [{"id": "m", "scene_id": "a", "type": "media"}]})

    def test_collects_every_problem(self):
        with self.assertRaises(ValidationError) as ctx:
            TourGraph.load(
                TOUR,
                [scene("a", 0), scene("b", 0), scene("c", 2, tour_id="other")],
                {"a": [link("h1", "a", "nope")], "zzz": [link("h2", "zzz", "a")]},
            )
        fields = sorted(p["field"] for p in ctx.exception.problems)
        self.assertEqual(fields, ["order_index", "scene_id", "target_scene_id", "tour_id"])

    def test_empty_tour_rejected(self):
        with self.assertRaises(ValidationError):
            TourGraph.load(TOUR, [], {})

    def test_unknown_scene_is_not_found(self):
        graph = TourGraph.load(TOUR, [scene("a", 0)], {})
        with self.assertRaises(NotFoundError) as ctx:
            graph.get_scene("nope")
        self.assertEqual(ctx.exception.details["scene_id"], "nope")
        with self.assertRaises(NotFoundError):
            graph.get_hotspot("a", "nope")


if __name__ == "__main__":
    unittest.main()
