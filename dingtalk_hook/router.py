"""
Compilação de rotas e políticas de menção.

Uma rota seleciona canais (grupos) pelo primeiro predicado que casa com a
mensagem; uma regra de menção sobrepõe campos da menção base do grupo.
"""

from dataclasses import dataclass, field
from functools import reduce
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .config import Config, MentionConfig, MsgType, TargetConfig, WhenConfig, valid_template_name
from .constants import DEFAULT_CHANNEL, DEFAULT_TEMPLATE
from .exceptions import ConfigValidationError

_MENTION_FIELDS = ("at_all", "at_mobiles", "at_user_ids")


@dataclass(frozen=True)
class Target:
    name: str
    webhook: str
    secret: str
    msg_type: MsgType
    title: str = ""

    @classmethod
    def from_config(cls, cfg: TargetConfig) -> "Target":
        return cls(
            name=cfg.name,
            webhook=cfg.webhook.strip(),
            secret=cfg.secret,
            msg_type=MsgType(cfg.msg_type),
            title=cfg.title.strip(),
        )


@dataclass(frozen=True)
class MatchPredicate:
    """AND entre dimensões declaradas, OR dentro de cada dimensão."""

    receivers: FrozenSet[str] = frozenset()
    statuses: FrozenSet[str] = frozenset()
    labels: Tuple[Tuple[str, FrozenSet[str]], ...] = ()

    @classmethod
    def from_config(cls, when: Optional[WhenConfig]) -> "MatchPredicate":
        if when is None:
            return cls()
        receivers = frozenset(r.strip() for r in when.receiver if r.strip())
        statuses = frozenset(s.strip().lower() for s in when.status if s.strip())
        labels = []
        for key in sorted(when.labels):
            values = frozenset(v for v in when.labels[key] if v.strip())
            if key.strip() and values:
                labels.append((key.strip(), values))
        return cls(receivers, statuses, tuple(labels))

    def matches(self, msg: Dict[str, Any]) -> bool:
        if self.receivers and str(msg.get("receiver") or "") not in self.receivers:
            return False
        if self.statuses and str(msg.get("status") or "").lower() not in self.statuses:
            return False
        for key, allowed in self.labels:
            if not _label_matches(msg, key, allowed):
                return False
        return True


def _label_matches(msg: Dict[str, Any], key: str, allowed: FrozenSet[str]) -> bool:
    # commonLabels, depois groupLabels, depois qualquer alerta
    for scope in ("commonLabels", "groupLabels"):
        labels = msg.get(scope) or {}
        if key in labels:
            return labels[key] in allowed
    for alert in msg.get("alerts") or []:
        labels = alert.get("labels") or {}
        if labels.get(key) in allowed:
            return True
    return False


@dataclass(frozen=True)
class MentionPolicy:
    at_all: bool = False
    at_mobiles: Tuple[str, ...] = ()
    at_user_ids: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, cfg: Optional[MentionConfig]) -> "MentionPolicy":
        if cfg is None:
            return cls()
        return cls(bool(cfg.at_all), tuple(cfg.at_mobiles), tuple(cfg.at_user_ids))

    def is_empty(self) -> bool:
        return not self.at_all and not self.at_mobiles and not self.at_user_ids


def _clean_ids(values: Iterable[str]) -> Tuple[str, ...]:
    out = []
    seen = set()
    for v in values:
        v = (v or "").strip()
        if v.startswith("@"):
            v = v[1:]
        if not v or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return tuple(out)


def normalize_mention(policy: MentionPolicy) -> MentionPolicy:
    if policy.at_all:
        return MentionPolicy(at_all=True)
    return MentionPolicy(False, _clean_ids(policy.at_mobiles), _clean_ids(policy.at_user_ids))


def merge_mention(base: MentionPolicy, overlay: MentionPolicy, fields_set: Iterable[str]) -> MentionPolicy:
    """Sobrepõe em `base` apenas os campos declarados explicitamente pela regra."""
    declared = set(fields_set)
    values = {
        name: getattr(overlay, name) if name in declared else getattr(base, name)
        for name in _MENTION_FIELDS
    }
    return MentionPolicy(**values)


@dataclass(frozen=True)
class MentionRule:
    name: str
    when: MatchPredicate
    mention: MentionPolicy
    fields_set: FrozenSet[str] = frozenset(_MENTION_FIELDS)


@dataclass(frozen=True)
class Group:
    name: str
    targets: Tuple[Target, ...]
    template: str = DEFAULT_TEMPLATE
    mention: MentionPolicy = field(default_factory=MentionPolicy)
    mention_rules: Tuple[MentionRule, ...] = ()

    def effective_mention(self, msg: Dict[str, Any]) -> MentionPolicy:
        merged = reduce(
            lambda acc, rule: merge_mention(acc, rule.mention, rule.fields_set),
            (rule for rule in self.mention_rules if rule.when.matches(msg)),
            self.mention,
        )
        return normalize_mention(merged)


@dataclass(frozen=True)
class Route:
    name: str
    when: MatchPredicate
    groups: Tuple[str, ...]


def _compile_mention_rule(cfg) -> MentionRule:
    fields_set = frozenset(cfg.mention.model_fields_set) & frozenset(_MENTION_FIELDS)
    return MentionRule(
        name=cfg.name.strip(),
        when=MatchPredicate.from_config(cfg.when),
        mention=normalize_mention(MentionPolicy.from_config(cfg.mention)),
        fields_set=fields_set,
    )


def compile_targets(cfg: Config) -> Mapping[str, Target]:
    return MappingProxyType({name: Target.from_config(t) for name, t in cfg.dingtalk.targets_by_name().items()})


def compile_groups(cfg: Config, targets: Mapping[str, Target]) -> Mapping[str, Group]:
    out: Dict[str, Group] = {}
    for gc in cfg.dingtalk.groups:
        name = gc.name.strip()
        if not name:
            raise ConfigValidationError("group name is empty")

        template = gc.template.strip() or DEFAULT_TEMPLATE
        if not valid_template_name(template):
            raise ConfigValidationError(f"group {name!r} has invalid template name {template!r}")

        resolved = []
        for target_name in gc.targets:
            target = targets.get(target_name)
            if target is None:
                raise ConfigValidationError(f"group {name!r} references unknown target {target_name!r}")
            resolved.append(target)

        out[name] = Group(
            name=name,
            targets=tuple(resolved),
            template=template,
            mention=normalize_mention(MentionPolicy.from_config(gc.mention)),
            mention_rules=tuple(_compile_mention_rule(rc) for rc in gc.mention_rules),
        )
    return MappingProxyType(out)


def compile_routes(cfg: Config) -> Tuple[Route, ...]:
    return tuple(
        Route(
            name=rc.name.strip(),
            when=MatchPredicate.from_config(rc.when),
            groups=tuple(rc.groups),
        )
        for rc in cfg.dingtalk.routes
    )


def first_match(routes: Iterable[Route], msg: Dict[str, Any]) -> Tuple[str, ...]:
    for route in routes:
        if route.when.matches(msg):
            return route.groups
    return ()


def resolve_groups(routes: Iterable[Route], msg: Dict[str, Any]) -> Tuple[str, ...]:
    return first_match(routes, msg) or (DEFAULT_CHANNEL,)
