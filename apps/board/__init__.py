# apps/board/__init__.py

"""
Board - Ordenação e sincronização em tempo real do Vortex Board

Funcionalidades:
- Chaves de posição fracionárias com rebalanceamento
- Concorrência otimista por vizinhança (movimentos de cartões e colunas)
- Registro de mudanças sequenciado por board, com replay
- WebSockets para atualizações em tempo real
- Notificações deduplicadas (atribuição, menção, prazo)
"""
