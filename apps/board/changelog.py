# apps/board/changelog.py

"""
Registro de mudanças (ChangeLog) - append-only, sequenciado por board

append() é a única mutação. Os listeners (broadcaster, notificações)
só rodam depois que a entrada está durável: na versão em memória logo
após o append, na versão ORM no on_commit da transação.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from django.db import DatabaseError, transaction

from .events import ChangeEntry
from .exceptions import ChangeLogAppendError, PersistenceUnavailable

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEntry], None]


class BaseChangeLog:
    """Listeners e despacho isolado, comum às duas implementações"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def add_listener(self, callback: Listener):
        self._listeners.append(callback)

    def remove_listener(self, callback: Listener):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _dispatch(self, entry: ChangeEntry):
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.error(f"❌ Listener {listener!r} falhou em {entry.entry_id}: {e}", exc_info=True)

    def append(self, entry: ChangeEntry) -> ChangeEntry:
        raise NotImplementedError

    def read_since(self, board_id, sequence_number: int = 0,
                   limit: Optional[int] = None) -> List[ChangeEntry]:
        raise NotImplementedError

    def last_sequence(self, board_id) -> int:
        raise NotImplementedError


class ChangeLog(BaseChangeLog):
    """ChangeLog em memória"""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._entries: Dict[str, List[ChangeEntry]] = {}
        self.available = True

    def append(self, entry: ChangeEntry) -> ChangeEntry:
        if entry.sequence_number is not None:
            raise ChangeLogAppendError(f"Entrada já sequenciada: {entry.entry_id}")
        with self._lock:
            if not self.available:
                raise ChangeLogAppendError(f"Registro indisponível para o board {entry.board_id}")
            entries = self._entries.setdefault(entry.board_id, [])
            sequenced = entry.sequenced(len(entries) + 1)
            entries.append(sequenced)
        self._dispatch(sequenced)
        return sequenced

    def read_since(self, board_id, sequence_number=0, limit=None):
        with self._lock:
            entries = self._entries.get(str(board_id), [])
            # sequência n fica no índice n - 1
            result = entries[max(sequence_number, 0):]
        return result[:limit] if limit is not None else result

    def last_sequence(self, board_id) -> int:
        with self._lock:
            return len(self._entries.get(str(board_id), []))


class OrmChangeLog(BaseChangeLog):
    """
    ChangeLog persistido em RegistroMudanca

    O número de sequência sai de Board.ultima_sequencia, lido com
    select_for_update: dois appends concorrentes no mesmo board nunca
    recebem o mesmo número. Precisa rodar dentro de transaction.atomic.
    """

    def append(self, entry: ChangeEntry) -> ChangeEntry:
        from apps.core.models import Board, RegistroMudanca

        if entry.sequence_number is not None:
            raise ChangeLogAppendError(f"Entrada já sequenciada: {entry.entry_id}")

        try:
            with transaction.atomic():
                board = Board.objects.select_for_update().only('id', 'ultima_sequencia').get(
                    pk=int(entry.board_id)
                )
                sequenced = entry.sequenced(board.ultima_sequencia + 1)
                RegistroMudanca.objects.create(
                    board_id=board.pk,
                    sequencia=sequenced.sequence_number,
                    operacao=sequenced.operation.value,
                    entidade_id=sequenced.affected_entity_id,
                    sessao=sequenced.actor_session_id,
                    usuario_id=int(sequenced.actor_user_id) if sequenced.actor_user_id else None,
                    dados=sequenced.to_payload(),
                    criado_em=sequenced.timestamp,
                )
                Board.objects.filter(pk=board.pk).update(ultima_sequencia=sequenced.sequence_number)
        except (Board.DoesNotExist, ValueError) as e:
            raise ChangeLogAppendError(f"Board {entry.board_id} inválido: {e}") from e
        except DatabaseError as e:
            logger.error(f"❌ Falha ao gravar mudança do board {entry.board_id}: {e}")
            raise ChangeLogAppendError(str(e)) from e

        transaction.on_commit(lambda: self._dispatch(sequenced))
        return sequenced

    def read_since(self, board_id, sequence_number=0, limit=None):
        from apps.core.models import RegistroMudanca

        try:
            rows = RegistroMudanca.objects.filter(
                board_id=int(board_id), sequencia__gt=sequence_number
            ).order_by('sequencia').values_list('dados', flat=True)
            if limit is not None:
                rows = rows[:limit]
            return [ChangeEntry.from_payload(dados) for dados in rows]
        except ValueError:
            return []
        except DatabaseError as e:
            raise PersistenceUnavailable(str(e)) from e

    def last_sequence(self, board_id) -> int:
        from apps.core.models import Board

        try:
            value = Board.objects.filter(pk=int(board_id)).values_list(
                'ultima_sequencia', flat=True
            ).first()
        except ValueError:
            return 0
        except DatabaseError as e:
            raise PersistenceUnavailable(str(e)) from e
        return value or 0
