import logging
from typing import Any, Dict, List, Optional

from .config import MsgType
from .dingtalk import At, DingTalkMessage
from .exceptions import HookError
from .router import Group, MentionPolicy, Target, resolve_groups
from .runtime import RuntimeSnapshot
from .utils import default_markdown_title, normalize_message

logger = logging.getLogger(__name__)


def _to_at(policy: MentionPolicy) -> Optional[At]:
    if policy.is_empty():
        return None
    return At(
        at_mobiles=list(policy.at_mobiles),
        at_user_ids=list(policy.at_user_ids),
        is_at_all=policy.at_all,
    )


def build_message(target: Target, content: str, msg: Dict[str, Any], at: Optional[At]) -> DingTalkMessage:
    if target.msg_type == MsgType.TEXT:
        return DingTalkMessage(msg_type=MsgType.TEXT, title=target.title, text=content, at=at)
    title = target.title or default_markdown_title(msg)
    return DingTalkMessage(msg_type=MsgType.MARKDOWN, title=title, markdown=content, at=at)


def send_to_group(snapshot: RuntimeSnapshot, group: Group, message: Any, raw_text: Optional[str] = None) -> List[str]:
    """
    Renderiza o template do canal (ou usa `raw_text`) e envia para cada robô do canal.
    Retorna a lista de erros; um robô com falha não impede o envio aos demais.
    """
    msg = normalize_message(message)
    errors: List[str] = []

    if raw_text is not None:
        content = raw_text
    else:
        try:
            content = snapshot.renderer.render(group.template, msg)
        except HookError as e:
            logger.error(f"Falha ao renderizar template '{group.template}' (canal={group.name}): {e}")
            return [f"group {group.name}: {e}"]

    at = _to_at(group.effective_mention(msg))
    for target in group.targets:
        try:
            snapshot.client.send(target.webhook, target.secret, build_message(target, content, msg, at))
        except HookError as e:
            logger.error(
                f"Falha no envio (robô={target.name}, canal={group.name}, receiver={msg.get('receiver')}): {e}"
            )
            errors.append(f"group {group.name} target {target.name}: {e}")
    return errors


def notify(snapshot: RuntimeSnapshot, message: Any) -> List[str]:
    msg = normalize_message(message)
    errors: List[str] = []
    for name in resolve_groups(snapshot.routes, msg):
        group = snapshot.groups.get(name)
        if group is None:
            errors.append(f"unknown group {name}")
            continue
        errors.extend(send_to_group(snapshot, group, msg))
    return errors
