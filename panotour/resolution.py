from dataclasses import dataclass, field
from typing import Callable, Optional

from panotour.models import KIND_SCENE_LINK, hotspot_label


@dataclass(frozen=True)
class NavigateAction:
    hotspot_id: Optional[str]
    from_scene_id: str
    target_scene_id: str

    def to_dict(self):
        return {
            "action": "navigate",
            "hotspot_id": self.hotspot_id,
            "from_scene_id": self.from_scene_id,
            "target_scene_id": self.target_scene_id,
        }


@dataclass(frozen=True)
class DisplayAction:
    hotspot_id: str
    scene_id: str
    kind: str
    title: Optional[str] = None
    description: Optional[str] = None
    media_url: Optional[str] = None

    def to_dict(self):
        return {
            "action": "display",
            "hotspot_id": self.hotspot_id,
            "scene_id": self.scene_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "media_url": self.media_url,
        }


def resolve_action(hotspot, scene_id):
    if hotspot.kind == KIND_SCENE_LINK:
        return NavigateAction(hotspot_id=hotspot.id, from_scene_id=scene_id, target_scene_id=hotspot.target_scene_id)
    return DisplayAction(
        hotspot_id=hotspot.id,
        scene_id=scene_id,
        kind=hotspot.kind,
        title=hotspot.title,
        description=hotspot.description,
        media_url=getattr(hotspot, "media_url", None),
    )


@dataclass(frozen=True)
class ResolvedHotspot:
    id: str
    scene_id: str
    kind: str
    yaw: float
    pitch: float
    label: str
    icon_type: str
    target_scene_id: Optional[str] = None
    on_activate: Callable = field(default=None, compare=False, repr=False)

    def to_viewer_dict(self):
        return {
            "id": self.id,
            "yaw": self.yaw,
            "pitch": self.pitch,
            "label": self.label,
            "kind": self.kind,
            "iconType": self.icon_type,
            "targetSceneId": self.target_scene_id,
            "onActivate": self.on_activate,
        }


class HotspotResolver:
    """Packages a scene's hotspots for the viewer overlay.

    `activate(scene_id, hotspot_id)` is the session entry point the callbacks
    forward to. Callbacks are cached per hotspot id and rebuilt whenever the
    hotspot is resolved for a different scene, so a redraw never hands out a
    callback bound to a scene the viewer has already left.
    """

    def __init__(self, graph, activate):
        self.graph = graph
        self._activate = activate
        self._callbacks = {}

    def callback_for(self, scene_id, hotspot_id):
        cached = self._callbacks.get(hotspot_id)
        if cached is not None and cached[0] == scene_id:
            return cached[1]

        def on_activate():
            return self._activate(scene_id, hotspot_id)

        self._callbacks[hotspot_id] = (scene_id, on_activate)
        return on_activate

    def resolve(self, scene_id):
        titles = self.graph.scene_titles()
        out = []
        for hs in self.graph.get_hotspots(scene_id):
            out.append(
                ResolvedHotspot(
                    id=hs.id,
                    scene_id=scene_id,
                    kind=hs.kind,
                    yaw=hs.position.yaw,
                    pitch=hs.position.pitch,
                    label=hotspot_label(hs, titles),
                    icon_type=hs.icon_type,
                    target_scene_id=getattr(hs, "target_scene_id", None),
                    on_activate=self.callback_for(scene_id, hs.id),
                )
            )
        return out

    def clear(self):
        self._callbacks.clear()
