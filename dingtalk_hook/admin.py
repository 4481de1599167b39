"""
API administrativa (Basic Auth).

Registrada sob `admin.path_prefix`; responde 404 enquanto `admin.enabled`
estiver desligado no snapshot servido.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
from typing import Any, Optional

from flask import Blueprint, abort, request

from .config import BasicAuthConfig, redacted_config, valid_template_name
from .constants import ADMIN_MAX_BODY_BYTES, DEFAULT_CHANNEL, DEFAULT_TEMPLATE, TEMPLATE_EXTENSION
from .exceptions import HookError, TemplateError
from .notifier import send_to_group
from .renderer import embedded_default_text, render_text, validate_text
from .reload import ReloadManager
from .store import AtomicStore

logger = logging.getLogger(__name__)


class _BadRequest(Exception):
    pass


def _ok(data: Any = None, message: str = "ok"):
    body = {"code": 0, "message": message}
    if data is not None:
        body["data"] = data
    return body, 200


def _fail(message: str, status: int):
    return {"code": 1, "message": message}, status


def check_basic_auth(cfg: BasicAuthConfig) -> bool:
    auth = request.authorization
    if auth is None or auth.type != "basic":
        return False
    username = auth.username or ""
    password = auth.password or ""
    if not hmac.compare_digest(username.encode("utf-8"), cfg.username.encode("utf-8")):
        return False

    if cfg.password_sha256.strip():
        try:
            salt = base64.b64decode(cfg.salt.strip(), validate=True)
            want = bytes.fromhex(cfg.password_sha256.strip())
        except (binascii.Error, ValueError):
            return False
        got = hashlib.sha256(salt + password.encode("utf-8")).digest()
        return hmac.compare_digest(got, want)

    return hmac.compare_digest(password.encode("utf-8"), cfg.password.encode("utf-8"))


def _read_json() -> dict:
    data = request.get_data(cache=False)
    if len(data) >= ADMIN_MAX_BODY_BYTES:
        raise _BadRequest("body too large")
    if not data.strip():
        return {}
    try:
        payload = json.loads(data)
    except ValueError as e:
        raise _BadRequest(str(e))
    if not isinstance(payload, dict):
        raise _BadRequest("request body must be a json object")
    return payload


def _read_template(snapshot, name: str) -> Optional[str]:
    directory = (snapshot.config.template.dir or "").strip()
    if directory:
        path = os.path.join(directory, name + TEMPLATE_EXTENSION)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Template {name} ilegível em {directory}: {e}")
    if name == DEFAULT_TEMPLATE:
        return embedded_default_text()
    return None


def create_admin_blueprint(store: AtomicStore, reload_manager: Optional[ReloadManager] = None) -> Blueprint:
    bp = Blueprint("admin", __name__)

    @bp.before_request
    def guard():
        snapshot = store.load()
        if not snapshot.config.admin.enabled:
            abort(404)
        if not check_basic_auth(snapshot.config.admin.basic_auth):
            body, status = _fail("unauthorized", 401)
            return body, status, {"WWW-Authenticate": 'Basic realm="admin"'}
        return None

    @bp.errorhandler(_BadRequest)
    def bad_request(e):
        return _fail(str(e), 400)

    @bp.route("/api/v1/status", methods=["GET"])
    def status():
        snapshot = store.load()
        return _ok({
            "loaded_at": snapshot.loaded_at.isoformat(),
            "reload": reload_manager.status().as_dict() if reload_manager else None,
            "templates": snapshot.renderer.template_names(),
            "groups": sorted(snapshot.groups),
            "targets": sorted(snapshot.targets),
            "routes": [r.name for r in snapshot.routes],
        })

    @bp.route("/api/v1/reload", methods=["POST"])
    def reload():
        if reload_manager is None:
            return _fail("reload is not configured", 501)
        try:
            reload_manager.reload(force=True)
        except HookError as e:
            return _fail(str(e), 500)
        return _ok()

    @bp.route("/api/v1/config", methods=["GET"])
    def config():
        return _ok(redacted_config(store.load().config))

    @bp.route("/api/v1/templates", methods=["GET"])
    def templates():
        return _ok({"templates": store.load().renderer.template_names()})

    @bp.route("/api/v1/templates/validate", methods=["POST"])
    def validate_template():
        req = _read_json()
        try:
            validate_text(str(req.get("template_text") or ""))
        except TemplateError as e:
            return _fail(str(e), 400)
        return _ok()

    @bp.route("/api/v1/templates/<name>", methods=["GET"])
    def template(name):
        if not valid_template_name(name):
            return _fail("invalid template name", 400)
        text = _read_template(store.load(), name)
        if text is None:
            return _fail("template not found", 404)
        return text, 200, {"Content-Type": "text/plain; charset=utf-8"}

    @bp.route("/api/v1/render", methods=["POST"])
    def render():
        snapshot = store.load()
        req = _read_json()
        payload = req.get("payload") or {}
        group_name = str(req.get("channel") or req.get("group") or "").strip()
        try:
            if str(req.get("template_text") or "").strip():
                content = render_text(req["template_text"], payload)
            elif group_name:
                group = snapshot.groups.get(group_name)
                if group is None:
                    return _fail("unknown group", 400)
                content = snapshot.renderer.render(group.template, payload)
            else:
                content = snapshot.renderer.render(str(req.get("template") or ""), payload)
        except TemplateError as e:
            return _fail(str(e), 400)
        return _ok({"content": content})

    @bp.route("/api/v1/send", methods=["POST"])
    def send():
        snapshot = store.load()
        req = _read_json()
        group_name = str(req.get("channel") or req.get("group") or "").strip() or DEFAULT_CHANNEL
        group = snapshot.groups.get(group_name)
        if group is None:
            return _fail("unknown group", 400)

        raw_text = req.get("raw_text")
        raw_text = str(raw_text) if raw_text and str(raw_text).strip() else None
        errors = send_to_group(snapshot, group, req.get("payload") or {}, raw_text=raw_text)
        if errors:
            logger.error(f"Envio de teste falhou (canal={group_name}): {errors[0]}")
            return _fail(errors[0], 500)
        return _ok()

    return bp
