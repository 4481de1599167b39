import threading

from .runtime import RuntimeSnapshot


class AtomicStore:
    """
    Referência única para o snapshot servido.
    Leituras não bloqueiam (atribuição de referência é atômica no CPython);
    escritas são serializadas pelo lock.
    """

    def __init__(self, initial: RuntimeSnapshot):
        if initial is None:
            raise ValueError("initial snapshot must not be None")
        self._snapshot = initial
        self._write_lock = threading.Lock()

    def load(self) -> RuntimeSnapshot:
        return self._snapshot

    def store(self, snapshot: RuntimeSnapshot) -> None:
        if snapshot is None:
            raise ValueError("snapshot must not be None")
        with self._write_lock:
            self._snapshot = snapshot
