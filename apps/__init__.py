# apps/__init__.py

"""
Vortex Board - Aplicações Django

Este pacote contém todas as aplicações do sistema:
- core: Models principais e permissões
- board: Ordenação, sincronização em tempo real e notificações
"""

__version__ = '0.2.0'
__author__ = 'Equipe Vórtex'
