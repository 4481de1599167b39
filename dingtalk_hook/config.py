"""
Modelo do documento de configuração (YAML), defaults e validação.

Fluxo: YAML -> modelos pydantic (estrutura/tipos) -> defaults -> validação
semântica em ordem fixa. Cada chamada de `load`/`parse` falha com um único
erro: a primeira violação encontrada.
"""
import base64
import binascii
import os
import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic import ValidationError as _PydanticValidationError
from urllib.parse import urlsplit

from .constants import (
    DEFAULT_ADMIN_PREFIX,
    DEFAULT_ALERT_PATH,
    DEFAULT_CHANNEL,
    DEFAULT_DINGTALK_TIMEOUT,
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_LISTEN,
    DEFAULT_MAX_BODY_BYTES,
    DEFAULT_MSG_TYPE,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_RELOAD_INTERVAL,
    DEFAULT_WRITE_TIMEOUT,
    REDACTED_SECRET,
    TEMPLATE_NAME_RE,
)
from .exceptions import ConfigIOError, ConfigParseError, ConfigValidationError


class MsgType(str, Enum):
    MARKDOWN = "markdown"
    TEXT = "text"


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: Any) -> float:
    """
    Converte duração para segundos.
    Aceita números (segundos) ou strings no estilo Go: '500ms', '5s', '1m30s'.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


def _as_list(value: Any) -> Any:
    # YAML permite 'status: firing' no lugar de 'status: [firing]'
    if value is None:
        return []
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return [value]
    return value


def _as_label_lists(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {k: _as_list(v) for k, v in value.items()}
    return value


Duration = Annotated[float, BeforeValidator(parse_duration)]
StrList = Annotated[List[str], BeforeValidator(_as_list)]
LabelLists = Annotated[Dict[str, List[str]], BeforeValidator(_as_label_lists)]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Chave presente com valor nulo equivale a chave ausente
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class ServerConfig(_Model):
    listen: str = DEFAULT_LISTEN
    path: str = DEFAULT_ALERT_PATH
    read_timeout: Duration = DEFAULT_READ_TIMEOUT
    write_timeout: Duration = DEFAULT_WRITE_TIMEOUT
    idle_timeout: Duration = DEFAULT_IDLE_TIMEOUT
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES


class AuthConfig(_Model):
    token: str = ""


class BasicAuthConfig(_Model):
    username: str = ""
    password: str = ""
    password_sha256: str = ""
    salt: str = ""


class AdminConfig(_Model):
    enabled: bool = False
    path_prefix: str = DEFAULT_ADMIN_PREFIX
    basic_auth: BasicAuthConfig = Field(default_factory=BasicAuthConfig)


class ReloadConfig(_Model):
    enabled: bool = False
    interval: Duration = DEFAULT_RELOAD_INTERVAL


class TemplateConfig(_Model):
    dir: str = ""


class TargetConfig(_Model):
    """Robô do DingTalk (webhook + segredo de assinatura + tipo de mensagem)."""

    name: str = ""
    webhook: str = ""
    secret: str = ""
    msg_type: str = DEFAULT_MSG_TYPE
    title: str = ""


class WhenConfig(_Model):
    receiver: StrList = Field(default_factory=list)
    status: StrList = Field(default_factory=list)
    labels: LabelLists = Field(default_factory=dict)


class MentionConfig(_Model):
    at_all: bool = False
    at_mobiles: StrList = Field(default_factory=list)
    at_user_ids: StrList = Field(default_factory=list)


class MentionRuleConfig(_Model):
    name: str = ""
    when: WhenConfig = Field(default_factory=WhenConfig)
    mention: MentionConfig = Field(default_factory=MentionConfig)


class GroupConfig(_Model):
    """Canal: um ou mais robôs + template + política de menção."""

    name: str = ""
    targets: StrList = Field(default_factory=list, validation_alias=AliasChoices("targets", "robots"))
    template: str = ""
    mention: MentionConfig = Field(default_factory=MentionConfig)
    mention_rules: List[MentionRuleConfig] = Field(default_factory=list)


class RouteConfig(_Model):
    name: str = ""
    when: WhenConfig = Field(default_factory=WhenConfig)
    groups: StrList = Field(default_factory=list, validation_alias=AliasChoices("groups", "channels"))


class DingTalkConfig(_Model):
    timeout: Duration = DEFAULT_DINGTALK_TIMEOUT
    targets: List[TargetConfig] = Field(default_factory=list, validation_alias=AliasChoices("targets", "robots"))
    groups: List[GroupConfig] = Field(default_factory=list, validation_alias=AliasChoices("groups", "channels"))
    routes: List[RouteConfig] = Field(default_factory=list)

    def targets_by_name(self) -> Dict[str, TargetConfig]:
        return {t.name: t for t in self.targets}


class Config(_Model):
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    reload: ReloadConfig = Field(default_factory=ReloadConfig)
    template: TemplateConfig = Field(default_factory=TemplateConfig)
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)


def valid_template_name(name: Optional[str]) -> bool:
    return bool(name) and TEMPLATE_NAME_RE.fullmatch(name) is not None


def load(path: str) -> Config:
    cfg_path = (path or "").strip()
    if not cfg_path:
        raise ConfigIOError("config path is empty")
    try:
        with open(cfg_path, "rb") as fp:
            data = fp.read()
    except OSError as exc:
        raise ConfigIOError(f"read config: {exc}") from exc
    return parse(data, os.path.dirname(cfg_path))


def parse(data: bytes, base_dir: str) -> Config:
    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ConfigParseError(f"parse yaml: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigParseError("parse yaml: document root must be a mapping")

    try:
        cfg = Config.model_validate(raw)
    except _PydanticValidationError as exc:
        raise ConfigParseError(f"parse yaml: {_first_error(exc)}") from exc

    _apply_defaults(cfg)
    _validate(cfg)

    tpl_dir = cfg.template.dir.strip()
    if tpl_dir and not os.path.isabs(tpl_dir):
        tpl_dir = os.path.abspath(os.path.join(base_dir or "", tpl_dir))
    cfg.template.dir = tpl_dir
    return cfg


def _first_error(exc: _PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def _apply_defaults(cfg: Config) -> None:
    # Valores zerados/vazios explícitos recebem o mesmo default de um campo ausente
    server = cfg.server
    if not server.listen.strip():
        server.listen = DEFAULT_LISTEN
    if not server.path.strip():
        server.path = DEFAULT_ALERT_PATH
    if server.read_timeout <= 0:
        server.read_timeout = DEFAULT_READ_TIMEOUT
    if server.write_timeout <= 0:
        server.write_timeout = DEFAULT_WRITE_TIMEOUT
    if server.idle_timeout <= 0:
        server.idle_timeout = DEFAULT_IDLE_TIMEOUT
    if server.max_body_bytes <= 0:
        server.max_body_bytes = DEFAULT_MAX_BODY_BYTES

    if not cfg.admin.path_prefix.strip():
        cfg.admin.path_prefix = DEFAULT_ADMIN_PREFIX
    if cfg.reload.interval <= 0:
        cfg.reload.interval = DEFAULT_RELOAD_INTERVAL
    if cfg.dingtalk.timeout <= 0:
        cfg.dingtalk.timeout = DEFAULT_DINGTALK_TIMEOUT

    for target in cfg.dingtalk.targets:
        target.name = target.name.strip()
        target.msg_type = target.msg_type.strip() or DEFAULT_MSG_TYPE
    for group in cfg.dingtalk.groups:
        group.name = group.name.strip()
        group.targets = [t.strip() for t in group.targets]
    for route in cfg.dingtalk.routes:
        route.name = route.name.strip()
        route.groups = [g.strip() for g in route.groups]


def _validate(cfg: Config) -> None:
    cfg.server.path = cfg.server.path.strip()
    if not cfg.server.path.startswith("/"):
        cfg.server.path = "/" + cfg.server.path
    cfg.admin.path_prefix = cfg.admin.path_prefix.strip()
    if not cfg.admin.path_prefix.startswith("/"):
        cfg.admin.path_prefix = "/" + cfg.admin.path_prefix

    if cfg.admin.enabled:
        _validate_basic_auth(cfg.admin.basic_auth)

    target_names = _validate_targets(cfg.dingtalk.targets)
    group_names = _validate_groups(cfg.dingtalk.groups, target_names)
    if DEFAULT_CHANNEL not in group_names:
        raise ConfigValidationError(f"dingtalk.groups.{DEFAULT_CHANNEL} is required")
    _validate_routes(cfg.dingtalk.routes, group_names)


def _validate_basic_auth(auth: BasicAuthConfig) -> None:
    password = auth.password.strip()
    sha = auth.password_sha256.strip()
    if not auth.username.strip():
        raise ConfigValidationError("admin.basic_auth.username must not be empty")
    if not password and not sha:
        raise ConfigValidationError("admin.basic_auth.password or admin.basic_auth.password_sha256 is required")
    if password and sha:
        raise ConfigValidationError("admin.basic_auth.password and admin.basic_auth.password_sha256 are mutually exclusive")
    if not sha:
        return
    if len(sha) != 64:
        raise ConfigValidationError("admin.basic_auth.password_sha256 must be 64 hex chars")
    try:
        bytes.fromhex(sha)
    except ValueError as exc:
        raise ConfigValidationError(f"admin.basic_auth.password_sha256 must be hex: {exc}") from exc
    salt = auth.salt.strip()
    if not salt:
        raise ConfigValidationError("admin.basic_auth.salt is required when password_sha256 is set")
    try:
        base64.b64decode(salt, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigValidationError(f"admin.basic_auth.salt must be base64: {exc}") from exc


def _validate_targets(targets: List[TargetConfig]) -> set:
    if not targets:
        raise ConfigValidationError("dingtalk.targets must not be empty")
    names = set()
    for target in targets:
        name = target.name.strip()
        if not name:
            raise ConfigValidationError("dingtalk.targets[].name must not be empty")
        if name in names:
            raise ConfigValidationError(f"dingtalk.targets has duplicate name {name!r}")
        _validate_webhook(name, target.webhook)
        try:
            MsgType(target.msg_type)
        except ValueError:
            raise ConfigValidationError(f"dingtalk.targets[{name}].msg_type must be markdown or text") from None
        names.add(name)
    return names


def _validate_webhook(name: str, webhook: str) -> None:
    webhook = webhook.strip()
    prefix = f"dingtalk.targets[{name}].webhook"
    if not webhook:
        raise ConfigValidationError(f"{prefix} must not be empty")
    try:
        parts = urlsplit(webhook)
        parts.port  # porta inválida só aparece ao acessar o atributo
    except ValueError as exc:
        raise ConfigValidationError(f"{prefix} must be a valid url: {exc}") from exc
    if not parts.scheme:
        raise ConfigValidationError(f"{prefix} must be a valid url: missing protocol scheme")
    if parts.scheme.lower() not in ("http", "https"):
        raise ConfigValidationError(f"{prefix} scheme must be http or https")
    if not parts.hostname:
        raise ConfigValidationError(f"{prefix} host must not be empty")


def _validate_groups(groups: List[GroupConfig], target_names: set) -> set:
    if not groups:
        raise ConfigValidationError(f'dingtalk.groups must not be empty (must include name "{DEFAULT_CHANNEL}")')
    names = set()
    for group in groups:
        name = group.name.strip()
        if not name:
            raise ConfigValidationError("dingtalk.groups[].name must not be empty")
        if name in names:
            raise ConfigValidationError(f"dingtalk.groups has duplicate name {name!r}")
        if not group.targets:
            raise ConfigValidationError(f"dingtalk.groups[{name}].targets must not be empty")
        for target in group.targets:
            if target not in target_names:
                raise ConfigValidationError(f"dingtalk.groups[{name}] references unknown target {target!r}")
        names.add(name)
    return names


def _validate_routes(routes: List[RouteConfig], group_names: set) -> None:
    for route in routes:
        name = route.name.strip()
        if not name:
            raise ConfigValidationError("dingtalk.routes[].name must not be empty")
        if not route.groups:
            raise ConfigValidationError(f"dingtalk.routes[{name}].groups must not be empty")
        for group in route.groups:
            if group not in group_names:
                raise ConfigValidationError(f"dingtalk.routes[{name}] references unknown group {group!r}")


def _redact(value: str) -> str:
    return REDACTED_SECRET if value.strip() else ""


def redacted_config(cfg: Config) -> Dict[str, Any]:
    """
    Serializa a configuração para exibição (API admin) trocando segredos por '<secret>'.
    Segredos vazios continuam vazios para que o operador saiba que não estão definidos.
    """
    data = cfg.model_dump(mode="json")
    data["auth"]["token"] = _redact(cfg.auth.token)
    basic = data["admin"]["basic_auth"]
    for key in ("password", "password_sha256", "salt"):
        basic[key] = _redact(getattr(cfg.admin.basic_auth, key))
    for raw, target in zip(data["dingtalk"]["targets"], cfg.dingtalk.targets):
        raw["webhook"] = _redact(target.webhook)
        raw["secret"] = _redact(target.secret)
    return data
