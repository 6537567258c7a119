from flask import Flask, request, jsonify, send_from_directory, g, url_for
import os
import time
import asyncio
import logging
import sqlite3
import threading
from contextlib import contextmanager
from werkzeug.security import safe_join
from werkzeug.utils import secure_filename
from PIL import Image, ImageOps
from flask_cors import CORS

from panotour import repository as repo
from panotour.config import ViewerConfig
from panotour.errors import TourError, ValidationError, NotFoundError, NotReadyError, LoadFailedError
from panotour.session import TourSession, VIEWING, CLOSED

app = Flask(__name__)
CORS(app)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.getenv("PANOTOUR_DATA_DIR") or os.path.join(BASE_DIR, '..', 'data')
MEDIA_FOLDER = os.path.join(DATA_DIR, 'media')
DB_PATH = os.getenv("PANOTOUR_DB_PATH") or os.path.join(DATA_DIR, 'panotour.db')
LOG_FILE = os.getenv("PANOTOUR_LOG_FILE") or os.path.join(DATA_DIR, 'panotour.log')

app.config['DB_PATH'] = DB_PATH
app.config['MEDIA_FOLDER'] = MEDIA_FOLDER
app.config['MAX_CONTENT_LENGTH'] = 512 * 1024 * 1024
app.config['VIEWER_CONFIG'] = ViewerConfig.from_env()

os.makedirs(MEDIA_FOLDER, exist_ok=True)

# Setup Logging
handler = logging.FileHandler(LOG_FILE)
handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s: %(message)s'))
app.logger.addHandler(handler)
app.logger.setLevel(logging.DEBUG)
core_logger = logging.getLogger("panotour")
core_logger.addHandler(handler)
core_logger.setLevel(logging.DEBUG)

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp'}
THUMB_SIZE = (512, 256)

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    NotReadyError: 409,
    LoadFailedError: 502,
}


def get_db():
    if "db" not in g:
        g.db = repo.connect(app.config['DB_PATH'])
    return g.db


@app.teardown_appcontext
def close_db(_error):
    db = g.pop("db", None)
    if db is not None:
        db.close()


@app.errorhandler(TourError)
def handle_tour_error(err):
    status = ERROR_STATUS.get(type(err), 400)
    if status >= 500:
        app.logger.error(f"{err.code}: {err.message}")
    return jsonify(err.to_dict()), status


@app.errorhandler(sqlite3.Error)
def handle_db_error(err):
    app.logger.error(f"Database error: {err}")
    return jsonify({"error": "Database error", "code": "db_error"}), 500


@app.errorhandler(413)
def request_entity_too_large(error):
    return jsonify({'error': 'File too large', 'code': 'too_large'}), 413


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def process_image(input_file, output_path, max_size=(8192, 8192), quality=90):
    """Re-encode an uploaded panorama as a web-safe JPEG."""
    with Image.open(input_file) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode not in ('RGB', 'L'):
            img = img.convert('RGB')
        img.thumbnail(max_size, Image.Resampling.LANCZOS)
        img.save(output_path, 'JPEG', quality=quality, optimize=True)
        return img.width, img.height


def make_thumbnail(source_path, thumb_path, max_size=THUMB_SIZE, quality=82):
    with Image.open(source_path) as img:
        img = img.convert('RGB')
        img.thumbnail(max_size, Image.Resampling.LANCZOS)
        img.save(thumb_path, 'JPEG', quality=quality, optimize=True, progressive=True)


def store_scene_image(tour_id, scene_key, upload, prefix):
    """Save an uploaded image under the tour's media dir; returns (image_url, thumbnail_url)."""
    if upload is None or not upload.filename:
        raise ValidationError("No image file uploaded", field="file")
    if not allowed_file(upload.filename):
        raise ValidationError("Unsupported image type", field="file", actual=upload.filename)
    scene_dir = os.path.join(app.config['MEDIA_FOLDER'], tour_id, scene_key)
    os.makedirs(scene_dir, exist_ok=True)
    stem = secure_filename(upload.filename).rsplit('.', 1)[0] or "image"
    stamp = int(time.time() * 1000)
    image_name = f"{prefix}_{stem}_{stamp}.jpg"
    thumb_name = f"thumb_{stem}_{stamp}.jpg"
    image_path = os.path.join(scene_dir, image_name)
    try:
        width, height = process_image(upload.stream, image_path)
        make_thumbnail(image_path, os.path.join(scene_dir, thumb_name))
    except (OSError, Image.DecompressionBombError) as e:
        app.logger.warning(f"Image processing failed for {upload.filename}: {e}")
        raise ValidationError("Uploaded file is not a readable image", field="file", actual=upload.filename)
    if abs(width / float(height) - 2.0) > 0.05:
        app.logger.info(f"Scene image {image_name} is {width}x{height}, not 2:1 equirectangular")
    base = f"/media/{tour_id}/{scene_key}"
    return f"{base}/{image_name}", f"{base}/{thumb_name}"


@app.route('/media/<tour_id>/<scene_key>/<path:filename>')
def serve_media(tour_id, scene_key, filename):
    directory = safe_join(app.config['MEDIA_FOLDER'], tour_id, scene_key)
    if directory is None:
        raise NotFoundError("Media not found", tour_id=tour_id, scene_key=scene_key)
    resp = send_from_directory(directory, filename)
    # Names carry a timestamp, so an edited image never reuses a cached URL.
    resp.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    return resp


# Authoring


@app.route("/tours", methods=["POST"])
def tours_create():
    data = request.get_json(silent=True) or {}
    title = repo.clean_text(data.get("title"), "Untitled Tour")
    tour = repo.create_tour(
        get_db(),
        title,
        description=repo.clean_text(data.get("description"), "", field="description"),
        cover_image_url=data.get("cover_image_url"),
        is_published=bool(data.get("is_published")),
    )
    return jsonify({"tour": tour}), 201


@app.route("/tours", methods=["GET"])
def tours_list():
    published_only = request.args.get("published") in ("1", "true")
    return jsonify({"tours": repo.list_tours(get_db(), published_only=published_only)}), 200


@app.route("/tours/<tour_id>", methods=["GET"])
def tours_get(tour_id):
    db = get_db()
    payload = repo.serialize_tour(repo.get_tour_row(db, tour_id))
    scenes = repo.list_scenes(db, tour_id)
    for scene in scenes:
        scene["hotspots"] = repo.list_hotspots(db, scene["id"])
    payload["scenes"] = scenes
    return jsonify({"tour": payload}), 200


@app.route("/tours/<tour_id>", methods=["PATCH"])
def tours_patch(tour_id):
    data = request.get_json(silent=True) or {}
    fields = {k: data[k] for k in ("title", "description", "cover_image_url", "is_published") if k in data}
    return jsonify({"tour": repo.update_tour(get_db(), tour_id, **fields)}), 200


@app.route("/tours/<tour_id>", methods=["DELETE"])
def tours_delete(tour_id):
    repo.delete_tour(get_db(), tour_id)
    return jsonify({"message": "Tour deleted"}), 200


@app.route("/tours/<tour_id>/scenes", methods=["POST"])
def tours_add_scene(tour_id):
    db = get_db()
    repo.get_tour_row(db, tour_id)
    if request.files:
        form = request.form
        image_url, thumb_url = store_scene_image(tour_id, "uploads", request.files.get("file"), "pano")
        initial_view = {k: form.get(k) for k in ("yaw", "pitch", "fov") if form.get(k) is not None}
        scene = repo.create_scene(
            db,
            tour_id,
            (form.get("title") or "").strip() or "Unnamed",
            image_url,
            thumbnail_url=thumb_url,
            initial_view=initial_view,
            order_index=form.get("order_index") or None,
        )
    else:
        data = request.get_json(silent=True) or {}
        image_url = data.get("image_360_url")
        if not image_url:
            raise ValidationError("image_360_url is required", field="image_360_url")
        scene = repo.create_scene(
            db,
            tour_id,
            repo.clean_text(data.get("title"), "Unnamed"),
            image_url,
            thumbnail_url=data.get("thumbnail_url"),
            initial_view=data.get("initial_view"),
            order_index=data.get("order_index"),
        )
    app.logger.info(f"Scene {scene['id']} added to tour {tour_id}")
    return jsonify({"scene": scene}), 201


@app.route("/scenes/<scene_id>", methods=["PATCH"])
def scenes_patch(scene_id):
    data = request.get_json(silent=True) or {}
    fields = {k: data[k] for k in ("title", "thumbnail_url", "initial_view", "order_index", "image_360_url") if k in data}
    return jsonify({"scene": repo.update_scene(get_db(), scene_id, **fields)}), 200


@app.route("/scenes/<scene_id>", methods=["DELETE"])
def scenes_delete(scene_id):
    repo.delete_scene(get_db(), scene_id)
    return jsonify({"message": "Scene deleted"}), 200


@app.route("/scenes/<scene_id>/image", methods=["POST"])
def scenes_save_edited_image(scene_id):
    """Photo-editor save: the edited panorama replaces the scene image.

    Open viewer sessions keep their snapshot until they reload.
    """
    db = get_db()
    scene = repo.get_scene_row(db, scene_id)
    image_url, thumb_url = store_scene_image(scene["tour_id"], scene_id, request.files.get("file"), "edited")
    edit_data = {k: v for k, v in request.form.items()}
    updated = repo.record_image_edit(
        db,
        scene_id,
        image_url,
        thumbnail_url=thumb_url,
        edit_type=edit_data.pop("edit_type", "composite"),
        edit_data=edit_data,
    )
    app.logger.info(f"Scene {scene_id} image replaced by {image_url}")
    return jsonify({"scene": updated, "image_url": image_url, "requires_reload": True}), 200


@app.route("/scenes/<scene_id>/hotspots", methods=["POST"])
def hotspots_create(scene_id):
    data = request.get_json(silent=True) or {}
    hotspot = repo.create_hotspot(
        get_db(),
        scene_id,
        data.get("type"),
        data.get("position") or {},
        title=repo.clean_text(data.get("title"), None),
        description=data.get("description"),
        target_scene_id=data.get("target_scene_id"),
        media_url=data.get("media_url"),
        icon_type=data.get("icon_type"),
    )
    return jsonify({"hotspot": hotspot}), 201


@app.route("/hotspots/<hotspot_id>", methods=["PATCH"])
def hotspots_patch(hotspot_id):
    data = request.get_json(silent=True) or {}
    return jsonify({"hotspot": repo.update_hotspot(get_db(), hotspot_id, **data)}), 200


@app.route("/hotspots/<hotspot_id>", methods=["DELETE"])
def hotspots_delete(hotspot_id):
    repo.delete_hotspot(get_db(), hotspot_id)
    return jsonify({"message": "Hotspot deleted"}), 200


# Viewer sessions


class SessionRegistry:
    """Live viewer sessions, keyed by session id. Each owns its own snapshot and timer.

    Every request against a session holds that session's lock. Sessions idle
    for longer than ``ttl_sec`` are torn down and dropped on the next access.
    """

    def __init__(self, ttl_sec, clock=time.monotonic):
        self.ttl_sec = ttl_sec
        self.clock = clock
        self._lock = threading.Lock()
        self._entries = {}

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._entries

    def values(self):
        with self._lock:
            return [entry["session"] for entry in self._entries.values()]

    def clear(self):
        with self._lock:
            self._entries.clear()

    def add(self, session):
        self.evict_idle()
        with self._lock:
            self._entries[session.id] = {"session": session, "lock": threading.Lock(), "last_access": self.clock()}

    def pop(self, session_id):
        with self._lock:
            return self._entries.pop(session_id, None)

    def evict_idle(self):
        cutoff = self.clock() - self.ttl_sec
        with self._lock:
            stale = [sid for sid, entry in self._entries.items() if entry["last_access"] < cutoff]
            expired = [self._entries.pop(sid) for sid in stale]
        for entry in expired:
            with entry["lock"]:
                entry["session"].teardown()
            app.logger.info(f"Viewer session {entry['session'].id} expired after {self.ttl_sec}s idle")
        return len(expired)

    @contextmanager
    def use(self, session_id):
        self.evict_idle()
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None:
                entry["last_access"] = self.clock()
        if entry is None:
            raise NotFoundError(f"Viewer session {session_id} not found", session_id=session_id)
        with entry["lock"]:
            if entry["session"].status == CLOSED:
                raise NotFoundError(f"Viewer session {session_id} not found", session_id=session_id)
            yield entry["session"]


SESSIONS = SessionRegistry(float(os.getenv("PANOTOUR_SESSION_TTL_SEC") or "1800"))


def session_payload(session):
    payload = {"session": session.describe()}
    if session.status == VIEWING:
        viewer = session.viewer_params()
        for hs in viewer["hotspots"]:
            hs.pop("onActivate", None)
            hs["activateUrl"] = url_for("viewer_activate", session_id=session.id, hotspot_id=hs["id"])
        payload["viewer"] = viewer
        payload["scenes"] = session.scene_picker()
    return payload


@app.route("/viewer/sessions", methods=["POST"])
def viewer_open():
    data = request.get_json(silent=True) or {}
    tour_id = data.get("tour_id")
    if not tour_id:
        raise ValidationError("tour_id is required", field="tour_id")
    session = TourSession(repo.SqliteTourRepository(app.config['DB_PATH']), config=app.config['VIEWER_CONFIG'])
    try:
        asyncio.run(session.load(tour_id, data.get("scene_id")))
    except TourError:
        # A session that failed to load is never registered; the client opens a new one.
        session.teardown()
        raise
    SESSIONS.add(session)
    return jsonify(session_payload(session)), 201


@app.route("/viewer/sessions/<session_id>", methods=["GET"])
def viewer_get(session_id):
    with SESSIONS.use(session_id) as session:
        return jsonify(session_payload(session)), 200


@app.route("/viewer/sessions/<session_id>/hotspots/<hotspot_id>/activate", methods=["POST"])
def viewer_activate(session_id, hotspot_id):
    with SESSIONS.use(session_id) as session:
        action = session.on_hotspot_activated(hotspot_id)
        payload = session_payload(session)
    payload["action"] = action.to_dict()
    return jsonify(payload), 200


@app.route("/viewer/sessions/<session_id>/select", methods=["POST"])
def viewer_select(session_id):
    data = request.get_json(silent=True) or {}
    with SESSIONS.use(session_id) as session:
        session.select_scene(data.get("scene_id"))
        return jsonify(session_payload(session)), 200


@app.route("/viewer/sessions/<session_id>/step", methods=["POST"])
def viewer_step(session_id):
    data = request.get_json(silent=True) or {}
    with SESSIONS.use(session_id) as session:
        try:
            step = int(data.get("step"))
            moved = session.step_relative(step)
        except (TypeError, ValueError):
            return jsonify({"error": "step must be 1 or -1", "code": "bad_step"}), 400
        payload = session_payload(session)
    payload["moved"] = moved is not None
    return jsonify(payload), 200


@app.route("/viewer/sessions/<session_id>/interaction", methods=["POST"])
def viewer_interaction(session_id):
    data = request.get_json(silent=True) or {}
    with SESSIONS.use(session_id) as session:
        if "yaw" in data or "pitch" in data or "fov" in data:
            session.drag(data.get("yaw", session.view.yaw), data.get("pitch", session.view.pitch), data.get("fov"))
        else:
            session.on_user_interaction()
        return jsonify(session_payload(session)), 200


@app.route("/viewer/sessions/<session_id>/tick", methods=["POST"])
def viewer_tick(session_id):
    with SESSIONS.use(session_id) as session:
        session.tick()
        return jsonify(session_payload(session)), 200


@app.route("/viewer/sessions/<session_id>/reload", methods=["POST"])
def viewer_reload(session_id):
    data = request.get_json(silent=True) or {}
    with SESSIONS.use(session_id) as session:
        scene_id = data.get("scene_id", session.current_scene_id)
        asyncio.run(session.load(session.tour_id, scene_id))
        return jsonify(session_payload(session)), 200


@app.route("/viewer/sessions/<session_id>", methods=["DELETE"])
def viewer_close(session_id):
    entry = SESSIONS.pop(session_id)
    if entry is None:
        raise NotFoundError(f"Viewer session {session_id} not found", session_id=session_id)
    with entry["lock"]:
        entry["session"].teardown()
    return jsonify({"message": "Session closed"}), 200


repo.init_db(app.config['DB_PATH'])

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
