from typing import Any, Dict, List, Optional

from .constants import FALLBACK_TITLE


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def pick_first_nonempty(*candidates) -> Optional[str]:
    for c in candidates:
        if not _is_blank(c):
            return str(c).strip()
    return None


def _as_str_dict(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def normalize_message(data: Any) -> Dict[str, Any]:
    """
    Normaliza o payload de webhook do Alertmanager.
    Garante que receiver/status/alerts/labels/annotations existam com valores vazios,
    para que templates e predicados nunca recebam None.
    """
    if not isinstance(data, dict):
        data = {}
    alerts: List[Dict[str, Any]] = []
    for raw in data.get("alerts") or []:
        if not isinstance(raw, dict):
            continue
        alert = dict(raw)
        alert["status"] = str(raw.get("status") or "")
        alert["labels"] = _as_str_dict(raw.get("labels"))
        alert["annotations"] = _as_str_dict(raw.get("annotations"))
        alerts.append(alert)

    msg = dict(data)
    msg["receiver"] = str(data.get("receiver") or "")
    msg["status"] = str(data.get("status") or "")
    msg["alerts"] = alerts
    msg["groupLabels"] = _as_str_dict(data.get("groupLabels"))
    msg["commonLabels"] = _as_str_dict(data.get("commonLabels"))
    msg["commonAnnotations"] = _as_str_dict(data.get("commonAnnotations"))
    msg["externalURL"] = str(data.get("externalURL") or "")
    return msg


def default_markdown_title(msg: Dict[str, Any]) -> str:
    # Ordem: summary comum, summary do 1º alerta, alertname comum, alertname do 1º alerta
    alerts = msg.get("alerts") or []
    first = alerts[0] if alerts else {}
    title = pick_first_nonempty(
        (msg.get("commonAnnotations") or {}).get("summary"),
        (first.get("annotations") or {}).get("summary"),
        (msg.get("commonLabels") or {}).get("alertname"),
        (first.get("labels") or {}).get("alertname"),
    )
    return title or FALLBACK_TITLE


def count_by_status(msg: Dict[str, Any]) -> Dict[str, int]:
    counts = {"firing": 0, "resolved": 0}
    for alert in msg.get("alerts") or []:
        status = str(alert.get("status") or "").lower()
        if status in counts:
            counts[status] += 1
    return counts
