import os
import re

# Configurações globais de ambiente (processo)
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
DEBUG_MODE = os.getenv("DEBUG_MODE", "False").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Defaults aplicados ao documento de configuração quando o campo está ausente ou zerado
DEFAULT_LISTEN = "0.0.0.0:8080"
DEFAULT_ALERT_PATH = "/alert"
DEFAULT_READ_TIMEOUT = 5.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_IDLE_TIMEOUT = 60.0
DEFAULT_MAX_BODY_BYTES = 4 << 20
DEFAULT_ADMIN_PREFIX = "/admin"
DEFAULT_RELOAD_INTERVAL = 2.0
DEFAULT_DINGTALK_TIMEOUT = 5.0
DEFAULT_MSG_TYPE = "markdown"

# Nome fixo do canal de fallback e do template embutido
DEFAULT_CHANNEL = "default"
DEFAULT_TEMPLATE = "default"

TEMPLATE_EXTENSION = ".tmpl"
TEMPLATE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]{0,127}$")

# Marcador usado no lugar de segredos quando a configuração é exposta
REDACTED_SECRET = "<secret>"

# Título usado quando nenhum summary/alertname está disponível
FALLBACK_TITLE = "Alertmanager"

# Limite do corpo das requisições da API administrativa
ADMIN_MAX_BODY_BYTES = 2 << 20
