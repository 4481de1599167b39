import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import MsgType
from .constants import DEFAULT_DINGTALK_TIMEOUT, FALLBACK_TITLE
from .exceptions import SendError

logger = logging.getLogger(__name__)


@dataclass
class At:
    at_mobiles: List[str] = field(default_factory=list)
    at_user_ids: List[str] = field(default_factory=list)
    is_at_all: bool = False

    def is_empty(self) -> bool:
        return not self.is_at_all and not self.at_mobiles and not self.at_user_ids


@dataclass
class DingTalkMessage:
    msg_type: str
    title: str = ""
    markdown: str = ""
    text: str = ""
    at: Optional[At] = None


def sign(timestamp_ms: int, secret: str) -> str:
    """Assinatura do robô: base64(hmac_sha256(secret, "<timestamp>\\n<secret>"))."""
    string_to_sign = f"{timestamp_ms}\n{secret}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), string_to_sign, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _mention_tokens(content: str, at: Optional[At]) -> List[str]:
    if at is None:
        return []
    if at.is_at_all:
        return [] if "@all" in content else ["@all"]

    tokens: List[str] = []
    for raw in list(at.at_user_ids) + list(at.at_mobiles):
        value = (raw or "").strip()
        if value.startswith("@"):
            value = value[1:]
        if not value:
            continue
        token = "@" + value
        # Já presente no conteúdo renderizado ou já adicionado
        if token in content or token in tokens:
            continue
        tokens.append(token)
    return tokens


def _at_block(at: Optional[At]) -> Optional[Dict[str, Any]]:
    if at is None or at.is_empty():
        return None
    if at.is_at_all:
        return {"isAtAll": True}
    block: Dict[str, Any] = {"isAtAll": False}
    if at.at_mobiles:
        block["atMobiles"] = list(at.at_mobiles)
    if at.at_user_ids:
        block["atUserIds"] = list(at.at_user_ids)
    return block


def build_payload(message: DingTalkMessage) -> Dict[str, Any]:
    msg_type = message.msg_type

    if msg_type == MsgType.MARKDOWN:
        if not message.markdown:
            raise SendError("markdown content is empty")
        tokens = _mention_tokens(message.markdown, message.at)
        text = message.markdown + ("\n\n" + " ".join(tokens) if tokens else "")
        payload: Dict[str, Any] = {
            "msgtype": "markdown",
            "markdown": {"title": message.title or FALLBACK_TITLE, "text": text},
        }
    elif msg_type == MsgType.TEXT:
        if not message.text:
            raise SendError("text content is empty")
        tokens = _mention_tokens(message.text, message.at)
        content = message.text + ("\n" + " ".join(tokens) if tokens else "")
        payload = {"msgtype": "text", "text": {"content": content}}
    else:
        raise SendError(f"unsupported msg_type {str(msg_type)!r}")

    at_block = _at_block(message.at)
    if at_block is not None:
        payload["at"] = at_block
    return payload


class DingTalkClient:
    """Cliente HTTP do webhook de robô do DingTalk (uma tentativa por envio)."""

    def __init__(self, timeout: float = DEFAULT_DINGTALK_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_DINGTALK_TIMEOUT
        self.session = session or requests.Session()

    def send(self, webhook: str, secret: str, message: DingTalkMessage) -> None:
        payload = build_payload(message)

        params = None
        if secret:
            ts = int(time.time() * 1000)
            params = {"timestamp": str(ts), "sign": sign(ts, secret)}

        try:
            resp = self.session.post(webhook, params=params, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise SendError(f"post dingtalk: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        errcode = body.get("errcode", 0)
        errmsg = body.get("errmsg", "")

        logger.debug(f"Resposta DingTalk: status={resp.status_code} errcode={errcode}")
        if resp.status_code // 100 != 2:
            raise SendError(f"dingtalk http {resp.status_code}: {errmsg}")
        if errcode not in (0, None):
            raise SendError(f"dingtalk errcode={errcode} errmsg={errmsg}")
