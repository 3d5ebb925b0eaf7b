# apps/board/exceptions.py

"""
Taxonomia de erros do motor de ordenação e sincronização

- OrderingConflict: recuperável, o chamador relê a ordem e tenta de novo
- PersistenceUnavailable: recuperável, repetir com backoff
- InvalidMoveTarget: não repetir, a ação é rejeitada para o usuário
- DuplicateNotificationSuppressed: não é erro, apenas um no-op registrado em log
"""


class SyncError(Exception):
    """Base para os erros do motor de sincronização"""

    retryable = False


class OrderingConflict(SyncError):
    """
    A vizinhança observada pelo cliente não confere com a ordem atual.
    Nunca é engolido: sempre chega ao chamador.
    """

    retryable = True

    def __init__(self, entity_id, expected=None, actual=None, message=None):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Conflito de ordenação em {entity_id}: esperado {expected}, atual {actual}"
        )


class PersistenceUnavailable(SyncError):
    """Colaborador de persistência indisponível"""

    retryable = True


class InvalidMoveTarget(SyncError):
    """Destino inexistente ou inválido (coluna, board ou vizinho)"""


class ChangeLogAppendError(SyncError):
    """Falha ao gravar no registro de mudanças: a mutação não foi efetivada"""


class PrecisionExhausted(SyncError):
    """Não existe chave distinguível entre os vizinhos - exige rebalanceamento"""

    def __init__(self, lower, upper):
        self.lower = lower
        self.upper = upper
        super().__init__(f"Sem espaço entre {lower} e {upper}")


class ResyncRequired(SyncError):
    """Reconciliador bloqueado até ressincronizar com o registro de mudanças"""

    retryable = True


class InvalidTransition(SyncError):
    """Transição inválida na máquina de estados de um movimento pendente"""


class NotificationNotFound(SyncError):
    """Notificação inexistente para o usuário"""


class DuplicateNotificationSuppressed(Exception):
    """
    Já existe notificação para (entrada de origem, destinatário, tipo).
    Sinaliza um no-op, não uma falha.
    """

    def __init__(self, key):
        self.key = key
        super().__init__(f"Notificação duplicada suprimida: {key}")
