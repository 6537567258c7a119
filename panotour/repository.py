import asyncio
import datetime
import json
import logging
import sqlite3
import uuid

from panotour.errors import LoadFailedError, NotFoundError, ValidationError
from panotour.models import HOTSPOT_KINDS, KIND_MEDIA, KIND_SCENE_LINK, safe_float

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_VIEW = {"yaw": 0.0, "pitch": 0.0, "fov": 90.0}

SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS tours (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    cover_image_url TEXT,
    is_published INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS scenes (
    id TEXT PRIMARY KEY,
    tour_id TEXT NOT NULL,
    title TEXT NOT NULL,
    image_360_url TEXT NOT NULL,
    thumbnail_url TEXT,
    initial_view TEXT NOT NULL DEFAULT '{"yaw": 0, "pitch": 0, "fov": 90}',
    order_index INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tour_id) REFERENCES tours(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS hotspots (
    id TEXT PRIMARY KEY,
    scene_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('scene_link','info','media')),
    position TEXT NOT NULL,
    title TEXT,
    description TEXT,
    target_scene_id TEXT,
    media_url TEXT,
    icon_type TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (scene_id) REFERENCES scenes(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS image_edits (
    id TEXT PRIMARY KEY,
    scene_id TEXT NOT NULL,
    edit_type TEXT NOT NULL,
    edit_data TEXT NOT NULL DEFAULT '{}',
    image_url TEXT NOT NULL,
    applied_at TEXT NOT NULL,
    FOREIGN KEY (scene_id) REFERENCES scenes(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_scenes_tour ON scenes(tour_id, order_index);
CREATE INDEX IF NOT EXISTS idx_hotspots_scene ON hotspots(scene_id);
CREATE INDEX IF NOT EXISTS idx_image_edits_scene ON image_edits(scene_id);
"""


def now_iso():
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def connect(db_path):
    db = sqlite3.connect(db_path)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA foreign_keys = ON")
    return db


def init_db(db_path):
    db = sqlite3.connect(db_path)
    try:
        db.executescript(SCHEMA)
        db.commit()
    finally:
        db.close()


def serialize_tour(row):
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "cover_image_url": row["cover_image_url"],
        "is_published": bool(row["is_published"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def serialize_scene(row):
    try:
        initial_view = json.loads(row["initial_view"] or "null") or dict(DEFAULT_INITIAL_VIEW)
    except ValueError:
        initial_view = dict(DEFAULT_INITIAL_VIEW)
    return {
        "id": row["id"],
        "tour_id": row["tour_id"],
        "title": row["title"],
        "image_360_url": row["image_360_url"],
        "thumbnail_url": row["thumbnail_url"],
        "initial_view": initial_view,
        "order_index": row["order_index"],
    }


def serialize_hotspot(row):
    try:
        position = json.loads(row["position"] or "null") or {"yaw": 0.0, "pitch": 0.0}
    except ValueError:
        position = {"yaw": 0.0, "pitch": 0.0}
    return {
        "id": row["id"],
        "scene_id": row["scene_id"],
        "type": row["type"],
        "position": position,
        "title": row["title"],
        "description": row["description"],
        "target_scene_id": row["target_scene_id"],
        "media_url": row["media_url"],
        "icon_type": row["icon_type"],
    }


class SqliteTourRepository:
    """Async read side used by viewer sessions.

    sqlite3 connections are bound to their thread, so each fetch opens its own
    connection inside the worker thread.
    """

    def __init__(self, db_path):
        self.db_path = db_path

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.warning("Repository read failed: %s", e)
            raise LoadFailedError(f"Database read failed: {e}") from e

    def _query(self, sql, params):
        db = connect(self.db_path)
        try:
            return db.execute(sql, params).fetchall()
        finally:
            db.close()

    def _fetch_tour(self, tour_id):
        rows = self._query("SELECT * FROM tours WHERE id = ?", (tour_id,))
        if not rows:
            raise NotFoundError(f"Tour {tour_id} not found", tour_id=tour_id)
        return serialize_tour(rows[0])

    def _fetch_scenes(self, tour_id):
        rows = self._query("SELECT * FROM scenes WHERE tour_id = ? ORDER BY order_index ASC", (tour_id,))
        return [serialize_scene(r) for r in rows]

    def _fetch_hotspots(self, scene_id):
        rows = self._query("SELECT * FROM hotspots WHERE scene_id = ? ORDER BY created_at ASC, rowid ASC", (scene_id,))
        return [serialize_hotspot(r) for r in rows]

    async def fetch_tour(self, tour_id):
        return await self._run(self._fetch_tour, tour_id)

    async def fetch_scenes(self, tour_id):
        return await self._run(self._fetch_scenes, tour_id)

    async def fetch_hotspots(self, scene_id):
        return await self._run(self._fetch_hotspots, scene_id)


# Authoring helpers. These run inside a request with the caller's connection.


def get_tour_row(db, tour_id):
    row = db.execute("SELECT * FROM tours WHERE id = ?", (tour_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"Tour {tour_id} not found", tour_id=tour_id)
    return row


def get_scene_row(db, scene_id):
    row = db.execute("SELECT * FROM scenes WHERE id = ?", (scene_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"Scene {scene_id} not found", scene_id=scene_id)
    return row


def get_hotspot_row(db, hotspot_id):
    row = db.execute("SELECT * FROM hotspots WHERE id = ?", (hotspot_id,)).fetchone()
    if row is None:
        raise NotFoundError(f"Hotspot {hotspot_id} not found", hotspot_id=hotspot_id)
    return row


def list_tours(db, published_only=False):
    sql = "SELECT * FROM tours"
    if published_only:
        sql += " WHERE is_published = 1"
    sql += " ORDER BY created_at DESC"
    return [serialize_tour(r) for r in db.execute(sql).fetchall()]


def create_tour(db, title, description="", cover_image_url=None, is_published=False):
    tid = str(uuid.uuid4())
    ts = now_iso()
    db.execute(
        """
        INSERT INTO tours (id, title, description, cover_image_url, is_published, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (tid, title, description, cover_image_url, 1 if is_published else 0, ts, ts),
    )
    db.commit()
    return serialize_tour(get_tour_row(db, tid))


def clean_text(raw, default, field="title", allow_empty=False):
    if raw is None:
        return default
    if not isinstance(raw, str):
        raise ValidationError(f"{field} must be a string", field=field, actual=raw)
    text = raw.strip()
    if not text and not allow_empty:
        return default
    return text


def update_tour(db, tour_id, **fields):
    row = get_tour_row(db, tour_id)
    title = clean_text(fields.get("title"), row["title"])
    description = clean_text(fields.get("description"), row["description"], field="description", allow_empty=True)
    cover = fields["cover_image_url"] if "cover_image_url" in fields else row["cover_image_url"]
    published = row["is_published"] if fields.get("is_published") is None else (1 if fields["is_published"] else 0)
    db.execute(
        "UPDATE tours SET title = ?, description = ?, cover_image_url = ?, is_published = ?, updated_at = ? WHERE id = ?",
        (title, description, cover, published, now_iso(), tour_id),
    )
    db.commit()
    return serialize_tour(get_tour_row(db, tour_id))


def delete_tour(db, tour_id):
    get_tour_row(db, tour_id)
    db.execute("DELETE FROM tours WHERE id = ?", (tour_id,))
    db.commit()


def clean_initial_view(raw):
    data = raw if isinstance(raw, dict) else {}
    return {
        "yaw": safe_float(data.get("yaw"), 0.0),
        "pitch": safe_float(data.get("pitch"), 0.0),
        "fov": safe_float(data.get("fov"), 90.0),
    }


def parse_order_index(raw):
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("order_index must be an integer", field="order_index", actual=raw)


def create_scene(db, tour_id, title, image_url, thumbnail_url=None, initial_view=None, order_index=None):
    get_tour_row(db, tour_id)
    if order_index is None:
        last = db.execute("SELECT MAX(order_index) AS m FROM scenes WHERE tour_id = ?", (tour_id,)).fetchone()
        order_index = 0 if last["m"] is None else int(last["m"]) + 1
    else:
        order_index = parse_order_index(order_index)
        taken = db.execute(
            "SELECT id FROM scenes WHERE tour_id = ? AND order_index = ?", (tour_id, order_index)
        ).fetchone()
        if taken is not None:
            raise ValidationError(
                f"order_index {order_index} is already used by scene {taken['id']}",
                field="order_index",
                actual=order_index,
            )
    sid = str(uuid.uuid4())
    ts = now_iso()
    db.execute(
        """
        INSERT INTO scenes (id, tour_id, title, image_360_url, thumbnail_url, initial_view, order_index, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (sid, tour_id, title, image_url, thumbnail_url, json.dumps(clean_initial_view(initial_view)), order_index, ts, ts),
    )
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (ts, tour_id))
    db.commit()
    return serialize_scene(get_scene_row(db, sid))


def update_scene(db, scene_id, **fields):
    row = get_scene_row(db, scene_id)
    title = clean_text(fields.get("title"), row["title"])
    thumbnail = fields["thumbnail_url"] if "thumbnail_url" in fields else row["thumbnail_url"]
    image_url = fields.get("image_360_url") or row["image_360_url"]
    initial_view = row["initial_view"]
    if fields.get("initial_view") is not None:
        initial_view = json.dumps(clean_initial_view(fields["initial_view"]))
    order_index = row["order_index"]
    if fields.get("order_index") is not None:
        order_index = parse_order_index(fields["order_index"])
        taken = db.execute(
            "SELECT id FROM scenes WHERE tour_id = ? AND order_index = ? AND id != ?",
            (row["tour_id"], order_index, scene_id),
        ).fetchone()
        if taken is not None:
            raise ValidationError(
                f"order_index {order_index} is already used by scene {taken['id']}",
                field="order_index",
                actual=order_index,
            )
    ts = now_iso()
    db.execute(
        """
        UPDATE scenes SET title = ?, image_360_url = ?, thumbnail_url = ?, initial_view = ?, order_index = ?, updated_at = ?
        WHERE id = ?
        """,
        (title, image_url, thumbnail, initial_view, order_index, ts, scene_id),
    )
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (ts, row["tour_id"]))
    db.commit()
    return serialize_scene(get_scene_row(db, scene_id))


def delete_scene(db, scene_id):
    row = get_scene_row(db, scene_id)
    # Links pointing at the scene would dangle and make the whole tour unloadable.
    db.execute("DELETE FROM hotspots WHERE scene_id = ? OR target_scene_id = ?", (scene_id, scene_id))
    db.execute("DELETE FROM scenes WHERE id = ?", (scene_id,))
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (now_iso(), row["tour_id"]))
    db.commit()


def check_hotspot_fields(db, scene_row, kind, target_scene_id, media_url):
    if kind not in HOTSPOT_KINDS:
        raise ValidationError(f"type must be one of {', '.join(HOTSPOT_KINDS)}", field="type", actual=kind)
    if kind == KIND_SCENE_LINK:
        target = None
        if target_scene_id:
            target = db.execute(
                "SELECT id FROM scenes WHERE id = ? AND tour_id = ?", (target_scene_id, scene_row["tour_id"])
            ).fetchone()
        if target is None:
            raise ValidationError(
                "Target scene not found in same tour", field="target_scene_id", actual=target_scene_id
            )
    if kind == KIND_MEDIA and not media_url:
        raise ValidationError("Media hotspots need a media_url", field="media_url", actual=media_url)


def create_hotspot(db, scene_id, kind, position, title=None, description=None, target_scene_id=None, media_url=None, icon_type=None):
    scene = get_scene_row(db, scene_id)
    check_hotspot_fields(db, scene, kind, target_scene_id, media_url)
    if kind != KIND_SCENE_LINK:
        target_scene_id = None
    pos = position if isinstance(position, dict) else {}
    pos = {"yaw": safe_float(pos.get("yaw")), "pitch": safe_float(pos.get("pitch"))}
    hid = str(uuid.uuid4())
    ts = now_iso()
    db.execute(
        """
        INSERT INTO hotspots (id, scene_id, type, position, title, description, target_scene_id, media_url, icon_type, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (hid, scene_id, kind, json.dumps(pos), title, description, target_scene_id, media_url, icon_type, ts),
    )
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (ts, scene["tour_id"]))
    db.commit()
    return serialize_hotspot(get_hotspot_row(db, hid))


def update_hotspot(db, hotspot_id, **fields):
    current = serialize_hotspot(get_hotspot_row(db, hotspot_id))
    scene = get_scene_row(db, current["scene_id"])
    merged = dict(current)
    for key in ("type", "title", "description", "target_scene_id", "media_url", "icon_type"):
        if key in fields:
            merged[key] = fields[key]
    if fields.get("position") is not None:
        pos = fields["position"] if isinstance(fields["position"], dict) else {}
        merged["position"] = {
            "yaw": safe_float(pos.get("yaw"), current["position"].get("yaw", 0.0)),
            "pitch": safe_float(pos.get("pitch"), current["position"].get("pitch", 0.0)),
        }
    check_hotspot_fields(db, scene, merged["type"], merged["target_scene_id"], merged["media_url"])
    if merged["type"] != KIND_SCENE_LINK:
        merged["target_scene_id"] = None
    db.execute(
        """
        UPDATE hotspots SET type = ?, position = ?, title = ?, description = ?, target_scene_id = ?, media_url = ?, icon_type = ?
        WHERE id = ?
        """,
        (
            merged["type"],
            json.dumps(merged["position"]),
            merged["title"],
            merged["description"],
            merged["target_scene_id"],
            merged["media_url"],
            merged["icon_type"],
            hotspot_id,
        ),
    )
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (now_iso(), scene["tour_id"]))
    db.commit()
    return serialize_hotspot(get_hotspot_row(db, hotspot_id))


def delete_hotspot(db, hotspot_id):
    get_hotspot_row(db, hotspot_id)
    db.execute("DELETE FROM hotspots WHERE id = ?", (hotspot_id,))
    db.commit()


def list_hotspots(db, scene_id):
    get_scene_row(db, scene_id)
    rows = db.execute("SELECT * FROM hotspots WHERE scene_id = ? ORDER BY created_at ASC, rowid ASC", (scene_id,)).fetchall()
    return [serialize_hotspot(r) for r in rows]


def list_scenes(db, tour_id):
    get_tour_row(db, tour_id)
    rows = db.execute("SELECT * FROM scenes WHERE tour_id = ? ORDER BY order_index ASC", (tour_id,)).fetchall()
    return [serialize_scene(r) for r in rows]


def record_image_edit(db, scene_id, image_url, thumbnail_url=None, edit_type="composite", edit_data=None):
    """Swap a scene's panorama for an edited copy and keep an audit row."""
    row = get_scene_row(db, scene_id)
    ts = now_iso()
    db.execute(
        "INSERT INTO image_edits (id, scene_id, edit_type, edit_data, image_url, applied_at) VALUES (?, ?, ?, ?, ?, ?)",
        (str(uuid.uuid4()), scene_id, edit_type, json.dumps(edit_data or {}), image_url, ts),
    )
    db.execute(
        "UPDATE scenes SET image_360_url = ?, thumbnail_url = COALESCE(?, thumbnail_url), updated_at = ? WHERE id = ?",
        (image_url, thumbnail_url, ts, scene_id),
    )
    db.execute("UPDATE tours SET updated_at = ? WHERE id = ?", (ts, row["tour_id"]))
    db.commit()
    return serialize_scene(get_scene_row(db, scene_id))
