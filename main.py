import logging
import sys
import threading

from dingtalk_hook.constants import CONFIG_PATH, DEBUG_MODE, LOG_LEVEL
from dingtalk_hook.controller import create_app
from dingtalk_hook.exceptions import HookError
from dingtalk_hook.reload import ReloadManager
from dingtalk_hook.runtime import load_snapshot
from dingtalk_hook.store import AtomicStore

logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("dingtalk_hook")


def split_listen(listen):
    host, _, port = listen.rpartition(":")
    return host.strip("[]") or "0.0.0.0", int(port)


def main():
    try:
        snapshot = load_snapshot(CONFIG_PATH)
    except HookError as e:
        logger.error(f"Falha ao carregar configuração {CONFIG_PATH}: {e}")
        return 1

    store = AtomicStore(snapshot)
    cfg = snapshot.config
    reload_manager = ReloadManager(CONFIG_PATH, store, cfg.reload.enabled, cfg.reload.interval)

    stop_event = threading.Event()
    reload_manager.start(stop_event)

    app = create_app(store, reload_manager)
    host, port = split_listen(cfg.server.listen)
    logger.info(f"Escutando em {host}:{port} (alertas em {cfg.server.path})")
    try:
        # use_reloader=False evita duplicar o poller de recarga
        app.run(host=host, port=port, debug=DEBUG_MODE, use_reloader=False)
    finally:
        stop_event.set()
    return 0


if __name__ == '__main__':
    sys.exit(main())
