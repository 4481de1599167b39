"""
Recarga a quente de configuração e templates.

Estados: Idle -> Checking -> (Unchanged | Rebuilding) -> (Success | Failed) -> Idle.
Uma recarga só toca o store depois de um build completo bem-sucedido; em
falha o snapshot servido continua o mesmo.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .constants import DEFAULT_RELOAD_INTERVAL
from .exceptions import HookError
from .fingerprint import fingerprint
from .runtime import load_snapshot
from .store import AtomicStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReloadStatus:
    enabled: bool
    last_success: Optional[datetime] = None
    last_error: str = ""
    last_failure: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


class ReloadManager:
    def __init__(self, config_path: str, store: AtomicStore, enabled: bool = False, interval: float = DEFAULT_RELOAD_INTERVAL):
        if store is None:
            raise ValueError("store is None")
        if not (config_path or "").strip():
            raise ValueError("config_path is empty")
        self.config_path = config_path
        self.store = store
        self.enabled = bool(enabled)
        self.interval = interval if interval and interval > 0 else DEFAULT_RELOAD_INTERVAL

        # _reload_lock serializa recargas; _state_lock protege apenas os campos de status
        self._reload_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._last_fingerprint = ""
        self._last_success: Optional[datetime] = None
        self._last_failure: Optional[datetime] = None
        self._last_error = ""

        try:
            self._last_fingerprint = self._current_fingerprint()
        except HookError as e:
            logger.debug(f"Fingerprint inicial indisponível: {e}")

    def _current_fingerprint(self) -> str:
        return fingerprint(self.config_path, self.store.load())

    def record_failure(self, err: Exception) -> None:
        with self._state_lock:
            self._last_error = str(err)
            self._last_failure = datetime.now(timezone.utc)

    def status(self) -> ReloadStatus:
        with self._state_lock:
            return ReloadStatus(
                enabled=self.enabled,
                last_success=self._last_success,
                last_error=self._last_error,
                last_failure=self._last_failure,
            )

    def reload_if_changed(self) -> bool:
        """Recarrega apenas se o fingerprint mudou. Retorna True se o store foi trocado."""
        try:
            current = self._current_fingerprint()
        except HookError as e:
            self.record_failure(e)
            raise
        except Exception as e:
            self.record_failure(e)
            raise HookError(f"fingerprint: {e}") from e
        with self._state_lock:
            unchanged = current == self._last_fingerprint
        if unchanged:
            return False
        return self.reload(force=False)

    def reload(self, force: bool = False) -> bool:
        with self._reload_lock:
            try:
                current = self._current_fingerprint()
                with self._state_lock:
                    unchanged = current == self._last_fingerprint
                if not force and unchanged:
                    return False

                snapshot = load_snapshot(self.config_path)
                next_fingerprint = fingerprint(self.config_path, snapshot)
            except HookError as e:
                self.record_failure(e)
                logger.error(f"Falha na recarga de {self.config_path}: {e}")
                raise
            except Exception as e:
                # Erro inesperado também fica registrado no status
                self.record_failure(e)
                logger.exception(f"Erro inesperado na recarga de {self.config_path}")
                raise HookError(f"reload: {e}") from e

            self.store.store(snapshot)
            with self._state_lock:
                self._last_fingerprint = next_fingerprint
                self._last_success = datetime.now(timezone.utc)
                self._last_error = ""
            logger.info(f"Configuração recarregada de {self.config_path}")
            return True

    def start(self, stop_event: threading.Event) -> Optional["ReloadPoller"]:
        if not self.enabled:
            return None
        poller = ReloadPoller(self, stop_event)
        poller.start()
        return poller


class ReloadPoller(threading.Thread):
    def __init__(self, manager: ReloadManager, stop_event: threading.Event):
        super().__init__(daemon=True, name="reload-poller")
        self.manager = manager
        self._stop_event = stop_event

    def stop(self):
        self._stop_event.set()

    def run(self):
        logger.debug(f"Poller de recarga iniciado (intervalo={self.manager.interval}s)")
        while not self._stop_event.wait(self.manager.interval):
            try:
                self.manager.reload_if_changed()
            except HookError as e:
                logger.warning(f"Recarga periódica falhou: {e}")
            except Exception as e:
                self.manager.record_failure(e)
                logger.exception("Erro inesperado no poller de recarga")
        logger.debug("Poller de recarga finalizado")
