import hashlib
import os
from typing import Optional

from .constants import TEMPLATE_EXTENSION
from .exceptions import ConfigIOError


def _hash_file_stat(h, path: str) -> None:
    try:
        st = os.stat(path)
    except OSError as e:
        raise ConfigIOError(f"stat {path}: {e}") from e
    h.update(b"file:")
    h.update(path.encode("utf-8"))
    h.update(b"\0")
    h.update(f"{st.st_size}:{st.st_mtime_ns}".encode("ascii"))
    h.update(b"\0")


def _hash_template_dir(h, directory: str) -> None:
    h.update(b"dir:")
    h.update(directory.encode("utf-8"))
    h.update(b"\0")
    try:
        entries = os.listdir(directory)
    except FileNotFoundError:
        # Diretório ausente também é um estado (criá-lo depois dispara reload)
        h.update(b"missing\0")
        return
    except OSError as e:
        raise ConfigIOError(f"read template dir {directory}: {e}") from e

    names = sorted(
        name
        for name in entries
        if os.path.splitext(name)[1] == TEMPLATE_EXTENSION and not os.path.isdir(os.path.join(directory, name))
    )
    for name in names:
        _hash_file_stat(h, os.path.join(directory, name))


def fingerprint(config_path: str, snapshot: Optional[object] = None) -> str:
    """
    Digest barato (apenas metadados, nunca conteúdo) do arquivo de config e,
    se configurado no snapshot servido, do diretório de templates.
    """
    h = hashlib.sha256()
    _hash_file_stat(h, config_path)

    tpl_dir = ""
    cfg = getattr(snapshot, "config", None)
    if cfg is not None:
        tpl_dir = (cfg.template.dir or "").strip()
    if tpl_dir:
        _hash_template_dir(h, tpl_dir)
    return h.hexdigest()
