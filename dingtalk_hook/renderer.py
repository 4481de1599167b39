"""
Compilação e renderização de templates (Jinja2).

O template `default` é embutido no pacote; arquivos `*.tmpl` do diretório
configurado são adicionados por cima e podem sobrescrevê-lo.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import jinja2

from .config import TemplateConfig, valid_template_name
from .constants import DEFAULT_TEMPLATE, TEMPLATE_EXTENSION
from .exceptions import (
    ConfigIOError,
    TemplateCompileError,
    TemplateNotFoundError,
    TemplateRenderError,
)
from .utils import count_by_status, normalize_message

logger = logging.getLogger(__name__)

_EMBEDDED_PATH = os.path.join(os.path.dirname(__file__), "templates", "default" + TEMPLATE_EXTENSION)


def _default_filter(value: Any, fallback: str = "-") -> str:
    if value is None or isinstance(value, jinja2.Undefined):
        return fallback
    if isinstance(value, str):
        return fallback if value.strip() == "" else value
    return str(value)


def _kv_filter(value: Any) -> str:
    if not isinstance(value, dict) or not value:
        return ""
    return " ".join(f"{k}={value[k]}" for k in sorted(value))


def new_environment() -> jinja2.Environment:
    # Todos os caminhos de compilação usam o mesmo conjunto de filtros
    env = jinja2.Environment(
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["default"] = _default_filter
    env.filters["kv"] = _kv_filter
    return env


def embedded_default_text() -> str:
    with open(_EMBEDDED_PATH, "r", encoding="utf-8") as f:
        return f.read()


def _compile(env: jinja2.Environment, name: str, text: str) -> jinja2.Template:
    try:
        return env.from_string(text)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateCompileError(f"parse template {name!r}: {e}") from e


def _execute(name: str, tmpl: jinja2.Template, message: Any) -> str:
    payload = normalize_message(message)
    counts = count_by_status(payload)
    try:
        out = tmpl.render(
            payload=payload,
            firing_count=counts["firing"],
            resolved_count=counts["resolved"],
        )
    except Exception as e:
        raise TemplateRenderError(f"execute template {name!r}: {e}") from e
    return out.strip()


class Renderer:
    """Conjunto imutável de templates compilados, indexados por nome."""

    def __init__(self, templates: Dict[str, jinja2.Template], default_name: str = DEFAULT_TEMPLATE):
        if default_name not in templates:
            raise TemplateNotFoundError(f"default template {default_name!r} not found")
        self._templates = dict(templates)
        self._default_name = default_name

    @classmethod
    def from_config(cls, cfg: Optional[TemplateConfig] = None) -> "Renderer":
        env = new_environment()
        templates = {DEFAULT_TEMPLATE: _compile(env, DEFAULT_TEMPLATE, embedded_default_text())}

        directory = (cfg.dir if cfg else "") or ""
        if directory.strip():
            for name, text in _read_template_dir(directory):
                templates[name] = _compile(env, name, text)

        return cls(templates, DEFAULT_TEMPLATE)

    @property
    def default_name(self) -> str:
        return self._default_name

    def template_names(self) -> List[str]:
        return sorted(self._templates)

    def has_template(self, name: str) -> bool:
        return name in self._templates

    def render(self, name: str, message: Any) -> str:
        name = (name or "").strip() or self._default_name
        tmpl = self._templates.get(name)
        if tmpl is None:
            raise TemplateNotFoundError(f"template {name!r} not found")
        return _execute(name, tmpl, message)


def new_renderer(cfg: Optional[TemplateConfig] = None) -> Renderer:
    return Renderer.from_config(cfg)


def _read_template_dir(directory: str):
    try:
        entries = sorted(os.listdir(directory))
    except FileNotFoundError:
        logger.debug(f"Diretório de templates não existe: {directory}")
        return []
    except OSError as e:
        raise ConfigIOError(f"read template dir: {e}") from e

    loaded = []
    for entry in entries:
        path = os.path.join(directory, entry)
        if os.path.isdir(path):
            continue
        base, ext = os.path.splitext(entry)
        if ext != TEMPLATE_EXTENSION or not valid_template_name(base):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded.append((base, f.read()))
        except OSError as e:
            raise ConfigIOError(f"read template: {e}") from e
        except UnicodeDecodeError as e:
            raise ConfigIOError(f"read template {entry}: invalid utf-8: {e}") from e
    return loaded


def validate_text(text: str) -> None:
    _compile(new_environment(), "validate", text)


def render_text(text: str, message: Any) -> str:
    tmpl = _compile(new_environment(), "preview", text)
    return _execute("preview", tmpl, message)
