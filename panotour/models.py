"""Read-only snapshot types for a loaded tour.

Rows coming back from persistence are loose dicts: `position` and
`initial_view` may still be JSON text, numbers may be strings or garbage.
The `from_record` helpers turn them into frozen dataclasses and enforce the
per-kind hotspot fields, raising `ValidationError` with a single problem entry
that `TourGraph.load` aggregates.
"""
import json
import math
from dataclasses import dataclass
from typing import Optional, Union

from panotour.config import DEFAULT_FOV
from panotour.errors import ValidationError

KIND_SCENE_LINK = "scene_link"
KIND_INFO = "info"
KIND_MEDIA = "media"
HOTSPOT_KINDS = (KIND_SCENE_LINK, KIND_INFO, KIND_MEDIA)


def safe_float(val, default=0.0):
    try:
        out = float(val)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(out):
        return default
    return out


def parse_json_field(val, default=None):
    if val is None:
        return default
    if isinstance(val, (dict, list)):
        return val
    if isinstance(val, (bytes, str)):
        if not val.strip():
            return default
        try:
            return json.loads(val)
        except ValueError:
            return default
    return default


def problem(record_id, field, expected, actual, message):
    return {"id": record_id, "field": field, "expected": expected, "actual": actual, "message": message}


def _invalid(record_id, field, expected, actual, message):
    return ValidationError(message, problems=[problem(record_id, field, expected, actual, message)], id=record_id)


@dataclass(frozen=True)
class Position:
    yaw: float = 0.0
    pitch: float = 0.0

    @classmethod
    def from_record(cls, raw):
        data = parse_json_field(raw, {}) or {}
        if not isinstance(data, dict):
            data = {}
        return cls(yaw=safe_float(data.get("yaw")), pitch=safe_float(data.get("pitch")))


@dataclass(frozen=True)
class InitialView:
    yaw: float = 0.0
    pitch: float = 0.0
    fov: float = DEFAULT_FOV

    @classmethod
    def from_record(cls, raw):
        # Stored views are not trusted; ViewState clamps them again when seeding.
        data = parse_json_field(raw, {}) or {}
        if not isinstance(data, dict):
            data = {}
        return cls(
            yaw=safe_float(data.get("yaw"), 0.0),
            pitch=safe_float(data.get("pitch"), 0.0),
            fov=safe_float(data.get("fov"), DEFAULT_FOV),
        )

    def to_dict(self):
        return {"yaw": self.yaw, "pitch": self.pitch, "fov": self.fov}


@dataclass(frozen=True)
class Tour:
    id: str
    title: str = ""
    description: str = ""
    cover_image_url: Optional[str] = None
    is_published: bool = False

    @classmethod
    def from_record(cls, rec):
        return cls(
            id=str(rec["id"]),
            title=rec.get("title") or "",
            description=rec.get("description") or "",
            cover_image_url=rec.get("cover_image_url"),
            is_published=bool(rec.get("is_published")),
        )


@dataclass(frozen=True)
class Scene:
    id: str
    tour_id: str
    title: str
    image_url: str
    order_index: int
    initial_view: InitialView = InitialView()
    thumbnail_url: Optional[str] = None

    @classmethod
    def from_record(cls, rec):
        sid = rec.get("id")
        if not sid:
            raise _invalid(None, "id", "non-empty scene id", sid, "Scene record has no id")
        sid = str(sid)
        image_url = rec.get("image_360_url") or rec.get("image_url")
        if not image_url:
            raise _invalid(sid, "image_360_url", "image reference", image_url, f"Scene {sid} has no panorama image")
        order_index = rec.get("order_index")
        try:
            order_index = int(order_index)
        except (TypeError, ValueError):
            raise _invalid(sid, "order_index", "integer", order_index, f"Scene {sid} has no usable order_index")
        return cls(
            id=sid,
            tour_id=str(rec.get("tour_id") or ""),
            title=rec.get("title") or "",
            image_url=image_url,
            order_index=order_index,
            initial_view=InitialView.from_record(rec.get("initial_view")),
            thumbnail_url=rec.get("thumbnail_url"),
        )


@dataclass(frozen=True)
class SceneLinkHotspot:
    id: str
    scene_id: str
    target_scene_id: str
    position: Position = Position()
    title: Optional[str] = None
    description: Optional[str] = None
    icon_type: str = "arrow"
    kind = KIND_SCENE_LINK


@dataclass(frozen=True)
class InfoHotspot:
    id: str
    scene_id: str
    position: Position = Position()
    title: Optional[str] = None
    description: Optional[str] = None
    icon_type: str = "info"
    kind = KIND_INFO


@dataclass(frozen=True)
class MediaHotspot:
    id: str
    scene_id: str
    media_url: str
    position: Position = Position()
    title: Optional[str] = None
    description: Optional[str] = None
    icon_type: str = "media"
    kind = KIND_MEDIA


Hotspot = Union[SceneLinkHotspot, InfoHotspot, MediaHotspot]


def hotspot_from_record(rec, scene_id=None):
    """Build the kind-specific hotspot for a raw row, enforcing the fields that kind requires."""
    if isinstance(rec, (SceneLinkHotspot, InfoHotspot, MediaHotspot)):
        return rec
    hid = rec.get("id")
    if not hid:
        raise _invalid(None, "id", "non-empty hotspot id", hid, "Hotspot record has no id")
    hid = str(hid)
    owner = str(rec.get("scene_id") or scene_id or "")
    kind = rec.get("type") or rec.get("kind")
    common = {
        "id": hid,
        "scene_id": owner,
        "position": Position.from_record(rec.get("position")),
        "title": rec.get("title") or None,
        "description": rec.get("description") or None,
    }
    icon_type = rec.get("icon_type")
    if icon_type:
        common["icon_type"] = icon_type

    if kind == KIND_SCENE_LINK:
        target = rec.get("target_scene_id")
        if not target:
            raise _invalid(hid, "target_scene_id", "scene id", target, f"Scene link hotspot {hid} has no target scene")
        return SceneLinkHotspot(target_scene_id=str(target), **common)
    if kind == KIND_INFO:
        return InfoHotspot(**common)
    if kind == KIND_MEDIA:
        media_url = rec.get("media_url")
        if not media_url:
            raise _invalid(hid, "media_url", "media url", media_url, f"Media hotspot {hid} has no media_url")
        return MediaHotspot(media_url=media_url, **common)
    raise _invalid(hid, "type", list(HOTSPOT_KINDS), kind, f"Hotspot {hid} has unknown type {kind!r}")


def hotspot_label(hotspot, scene_titles=None):
    if hotspot.title:
        return hotspot.title
    if hotspot.kind == KIND_SCENE_LINK:
        target_title = (scene_titles or {}).get(hotspot.target_scene_id) or "Scene"
        return f"Go to {target_title}"
    return hotspot.kind.capitalize()
