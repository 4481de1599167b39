"""
Hierarquia de erros do proxy.

Cada build de configuração falha com exatamente um destes erros; a primeira
violação encontrada é a reportada.
"""


class HookError(Exception):
    """Erro base do proxy."""


class ConfigError(HookError):
    """Falha ao carregar ou validar o documento de configuração."""


class ConfigParseError(ConfigError):
    """YAML malformado ou tipos incompatíveis com o schema."""


class ConfigValidationError(ConfigError):
    """Documento bem formado mas semanticamente inválido."""


class ConfigIOError(ConfigError):
    """Arquivo ou diretório ilegível (exceto 'não existe' no diretório de templates)."""


class TemplateError(HookError):
    """Erro base de templates."""


class TemplateCompileError(TemplateError):
    pass


class TemplateNotFoundError(TemplateError):
    pass


class TemplateRenderError(TemplateError):
    pass


class CrossReferenceError(HookError):
    """Canal aponta para um template que não existe no conjunto compilado."""


class SendError(HookError):
    """Falha no envio para o webhook do DingTalk."""
