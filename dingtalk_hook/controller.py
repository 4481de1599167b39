import hmac
import json
import logging
from typing import Optional

from flask import Flask, request

from .admin import create_admin_blueprint
from .exceptions import HookError
from .notifier import notify
from .reload import ReloadManager
from .store import AtomicStore

logger = logging.getLogger(__name__)


def _reply(code: int, message: str, status: int):
    return {"code": code, "message": message}, status


def _same_token(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def check_token(expected: str) -> bool:
    """Aceita `Authorization: Bearer <token>` ou `X-Token: <token>`; sem token configurado, libera."""
    if not (expected or "").strip():
        return True

    auth = (request.headers.get("Authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return _same_token(auth[len("bearer "):].strip(), expected)

    token = (request.headers.get("X-Token") or "").strip()
    return bool(token) and _same_token(token, expected)


def create_app(store: AtomicStore, reload_manager: Optional[ReloadManager] = None) -> Flask:
    app = Flask(__name__)
    initial = store.load()

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return _reply(0, "ok", 200)

    @app.route("/readyz", methods=["GET"])
    def readyz():
        return _reply(0, "ready", 200)

    if reload_manager is not None:
        @app.route("/-/reload", methods=["POST"])
        def reload_endpoint():
            try:
                reload_manager.reload(force=True)
            except HookError as e:
                return _reply(500, str(e), 500)
            return _reply(0, "ok", 200)

    # Caminho do alerta e prefixo admin são fixados na inicialização
    @app.route(initial.config.server.path, methods=["POST"])
    def alert():
        ct = (request.headers.get("Content-Type") or "").strip()
        if ct and "application/json" not in ct:
            return _reply(415, "content-type must be application/json", 415)

        snapshot = store.load()
        if not check_token(snapshot.config.auth.token):
            return _reply(401, "unauthorized", 401)

        limit = snapshot.config.server.max_body_bytes
        if request.content_length is not None and request.content_length > limit:
            return _reply(413, "request body too large", 413)
        body = request.stream.read(limit + 1)
        if len(body) > limit:
            return _reply(413, "request body too large", 413)

        try:
            data = json.loads(body)
        except ValueError as e:
            logger.warning(f"Payload inválido: {e}")
            return _reply(400, "invalid json", 400)
        if not isinstance(data, dict):
            return _reply(400, "invalid json", 400)

        logger.debug(f"Alerta recebido: receiver={data.get('receiver')} status={data.get('status')}")
        errors = notify(snapshot, data)
        if errors:
            return _reply(500, "send failed", 500)
        return _reply(0, "ok", 200)

    app.register_blueprint(
        create_admin_blueprint(store, reload_manager),
        url_prefix=initial.config.admin.path_prefix.rstrip("/") or "/admin",
    )
    return app
