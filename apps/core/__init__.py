# apps/core/__init__.py

"""
Core - Aplicação principal do Vortex Board

Contém:
- Models (Usuario, Projeto, Board, Coluna, Cartao, RegistroMudanca, Notificacao)
- Sistema de permissões customizado
- Comando de manutenção das posições
"""
