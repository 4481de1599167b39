"""Pacote do proxy Alertmanager -> DingTalk com configuração recarregável a quente.

Este pacote contém:
- constants: variáveis de ambiente e defaults
- config: modelo, defaults e validação do documento YAML
- renderer: compilação e renderização de templates
- router: rotas, predicados e políticas de menção
- runtime / store: snapshot imutável servido e sua referência atômica
- fingerprint / reload: detecção de mudanças e recarga a quente
- dingtalk: cliente do webhook de robô (assinatura e payload)
- notifier: despacho de um alerta para os canais/robôs
- controller / admin: Flask app, endpoints e API administrativa
"""
