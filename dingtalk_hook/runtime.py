"""
Snapshot de execução: o estado compilado e imutável servido a cada requisição.

Um snapshot é construído inteiro a partir de uma configuração válida ou não é
construído; nunca existe um snapshot parcial.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Tuple

from .config import Config, load
from .constants import DEFAULT_CHANNEL
from .dingtalk import DingTalkClient
from .exceptions import CrossReferenceError
from .renderer import Renderer
from .router import Group, Route, Target, compile_groups, compile_routes, compile_targets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeSnapshot:
    config_path: str
    base_dir: str
    config: Config
    renderer: Renderer
    client: DingTalkClient
    targets: Mapping[str, Target]
    groups: Mapping[str, Group]
    routes: Tuple[Route, ...]
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_snapshot(config_path: str, base_dir: str, cfg: Config) -> RuntimeSnapshot:
    renderer = Renderer.from_config(cfg.template)
    client = DingTalkClient(cfg.dingtalk.timeout)

    targets = compile_targets(cfg)
    groups = compile_groups(cfg, targets)
    for name, group in groups.items():
        if not renderer.has_template(group.template):
            raise CrossReferenceError(f"group {name!r} references unknown template {group.template!r}")

    if DEFAULT_CHANNEL not in groups:
        raise CrossReferenceError("default group is required")

    return RuntimeSnapshot(
        config_path=config_path,
        base_dir=base_dir,
        config=cfg,
        renderer=renderer,
        client=client,
        targets=targets,
        groups=groups,
        routes=compile_routes(cfg),
    )


def load_snapshot(config_path: str) -> RuntimeSnapshot:
    cfg = load(config_path)
    snapshot = build_snapshot(config_path, os.path.dirname(config_path), cfg)
    logger.debug(
        f"Snapshot construído: {len(snapshot.targets)} robôs, {len(snapshot.groups)} canais, "
        f"{len(snapshot.routes)} rotas, templates={snapshot.renderer.template_names()}"
    )
    return snapshot
