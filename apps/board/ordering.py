# apps/board/ordering.py

"""
OrderingStore - único componente autorizado a gravar posições

Cada operação lê a ordem viva pelo repositório, confere o token de
concorrência (Neighborhood) enviado pelo cliente, calcula a nova chave
pelo PositionSpace e grava com compare-and-set na versão do pai.
Devolve uma ChangeEntry ainda sem número de sequência; quem chama
(BoardSyncEngine) faz o append no ChangeLog dentro da mesma transação.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

from .events import (
    CardCreated,
    CardDeleted,
    CardMoved,
    ChangeEntry,
    ColumnCreated,
    ColumnDeleted,
    ColumnMoved,
    KeysRebalanced,
    Operation,
)
from .exceptions import InvalidMoveTarget, OrderingConflict, PrecisionExhausted
from .persistence import PositionRepository
from .positions import Neighborhood, PositionSpace, insert_after, neighborhood_of

logger = logging.getLogger(__name__)

# Sentinela para "no fim da lista" (None significa "no topo")
LAST = object()

_NEW_ITEM = '__novo__'


class OrderingStore:
    """Dono exclusivo da ordem autoritativa de colunas e cartões"""

    def __init__(self, repository: PositionRepository, space: Optional[PositionSpace] = None):
        self.repository = repository
        self.space = space or PositionSpace()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def serialized(self, board_id):
        """Um único escritor lógico por board; boards diferentes não se bloqueiam"""
        with self._locks_guard:
            lock = self._locks.setdefault(str(board_id), threading.Lock())
        with lock:
            yield

    def board_for_column(self, column_id) -> Optional[str]:
        location = self.repository.locate_column(column_id)
        return location.board_id if location else None

    def board_for_card(self, card_id) -> Optional[str]:
        location = self.repository.locate_card(card_id)
        return location.board_id if location else None

    # === APOIO ===

    def _place(self, siblings, moving_id, after_id, live: Neighborhood) -> Tuple:
        """Chave nova para o item; rebalanceia os irmãos se a precisão acabou"""
        try:
            return self.space.key_between(live.lower_key, live.upper_key), ()
        except PrecisionExhausted as e:
            ordered = [item_id for item_id, _ in siblings if item_id != moving_id]
            ordered = insert_after(ordered, moving_id, after_id)
            keys = self.space.rebalance(ordered)
            logger.info(f"⚖️ Rebalanceando {len(keys)} irmãos ({e})")
            key = dict(keys)[moving_id]
            return key, tuple(pair for pair in keys if pair[0] != moving_id)

    @staticmethod
    def _check_token(entity_id, expected: Optional[Neighborhood], live: Neighborhood):
        if expected is not None and expected != live:
            raise OrderingConflict(entity_id, expected=expected, actual=live)

    def _card_neighborhood(self, column, entity_id, after_id, moving_id=None) -> Neighborhood:
        try:
            return neighborhood_of(column.cards, after_id, moving_id=moving_id)
        except KeyError:
            if self.repository.locate_card(after_id) is not None:
                raise OrderingConflict(
                    entity_id,
                    message=f"Cartão {after_id} não está mais na coluna {column.column_id}",
                )
            raise InvalidMoveTarget(f"Cartão vizinho {after_id} não existe")

    def _column_neighborhood(self, board, after_id, moving_id=None) -> Neighborhood:
        try:
            return neighborhood_of(board.columns, after_id, moving_id=moving_id)
        except KeyError:
            raise InvalidMoveTarget(f"Coluna vizinha {after_id} não existe neste board")

    # === CARTÕES ===

    def move_card(self, card_id, target_column_id, after_card_id=None, expected_version=None,
                  actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        """
        Move o cartão para logo após `after_card_id` (None = topo)

        `expected_version` é a Neighborhood vista pelo cliente; se a ordem
        viva for outra, levanta OrderingConflict sem gravar nada.
        """
        card_id = str(card_id)
        target_column_id = str(target_column_id)
        after_id = None if after_card_id is None else str(after_card_id)

        if after_id == card_id:
            raise InvalidMoveTarget(f"Cartão {card_id} não pode seguir a si mesmo")

        location = self.repository.locate_card(card_id)
        if location is None:
            raise InvalidMoveTarget(f"Cartão {card_id} não existe")

        column = self.repository.read_column(target_column_id)
        if column is None:
            raise InvalidMoveTarget(f"Coluna {target_column_id} não existe")
        if column.board_id != location.board_id:
            raise InvalidMoveTarget("Não é possível mover cartões entre boards")

        live = self._card_neighborhood(column, card_id, after_id, moving_id=card_id)
        self._check_token(card_id, expected_version, live)

        key, rebalanced = self._place(column.cards, card_id, after_id, live)

        written = self.repository.write_card_position(
            card_id, location.parent_id, target_column_id, key,
            expected_version=column.version, rebalanced=rebalanced,
        )
        if not written:
            raise OrderingConflict(
                card_id, expected=expected_version, actual=live,
                message=f"Coluna {target_column_id} mudou durante o movimento",
            )

        return ChangeEntry(
            board_id=column.board_id,
            operation=Operation.MOVE_CARD,
            affected_entity_id=card_id,
            details=CardMoved(
                column_id=target_column_id,
                position_key=key,
                from_column_id=location.parent_id,
                rebalanced=rebalanced,
            ),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            before_key=location.key,
            after_key=key,
        )

    def create_card(self, column_id, title='', after_card_id=LAST, expected_version=None,
                    actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        column_id = str(column_id)
        column = self.repository.read_column(column_id)
        if column is None:
            raise InvalidMoveTarget(f"Coluna {column_id} não existe")

        if after_card_id is LAST:
            ids = column.card_ids()
            after_id = ids[-1] if ids else None
        else:
            after_id = None if after_card_id is None else str(after_card_id)

        live = self._card_neighborhood(column, _NEW_ITEM, after_id)
        self._check_token(_NEW_ITEM, expected_version, live)

        key, rebalanced = self._place(column.cards, _NEW_ITEM, after_id, live)

        card_id = self.repository.insert_card(
            column_id, title, key, expected_version=column.version,
            rebalanced=rebalanced, created_by=actor_user_id,
        )
        if card_id is None:
            raise OrderingConflict(column_id, message=f"Coluna {column_id} mudou durante a criação")

        return ChangeEntry(
            board_id=column.board_id,
            operation=Operation.CREATE_CARD,
            affected_entity_id=card_id,
            details=CardCreated(
                column_id=column_id, position_key=key, title=title, rebalanced=rebalanced,
            ),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            after_key=key,
        )

    def delete_card(self, card_id, actor_session_id='', actor_user_id=None,
                    operation_id=None) -> ChangeEntry:
        """Arquiva o cartão, retirando-o de toda a ordenação"""
        card_id = str(card_id)
        location = self.repository.locate_card(card_id)
        if location is None:
            raise InvalidMoveTarget(f"Cartão {card_id} não existe")

        column = self.repository.read_column(location.parent_id)
        if not self.repository.remove_card(card_id, column.column_id, column.version):
            raise OrderingConflict(card_id, message=f"Coluna {column.column_id} mudou durante a remoção")

        return ChangeEntry(
            board_id=location.board_id,
            operation=Operation.DELETE_CARD,
            affected_entity_id=card_id,
            details=CardDeleted(column_id=location.parent_id),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            before_key=location.key,
        )

    # === COLUNAS ===

    def move_column(self, column_id, board_id, after_column_id=None, expected_version=None,
                    actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        """Mesmo contrato de move_card, no escopo do board"""
        column_id = str(column_id)
        board_id = str(board_id)
        after_id = None if after_column_id is None else str(after_column_id)

        if after_id == column_id:
            raise InvalidMoveTarget(f"Coluna {column_id} não pode seguir a si mesma")

        location = self.repository.locate_column(column_id)
        if location is None:
            raise InvalidMoveTarget(f"Coluna {column_id} não existe")

        board = self.repository.read_board(board_id)
        if board is None:
            raise InvalidMoveTarget(f"Board {board_id} não existe")
        if location.board_id != board.board_id:
            raise InvalidMoveTarget("Não é possível mover colunas entre boards")

        live = self._column_neighborhood(board, after_id, moving_id=column_id)
        self._check_token(column_id, expected_version, live)

        key, rebalanced = self._place(board.columns, column_id, after_id, live)

        written = self.repository.write_column_position(
            column_id, board_id, key, expected_version=board.version, rebalanced=rebalanced,
        )
        if not written:
            raise OrderingConflict(
                column_id, expected=expected_version, actual=live,
                message=f"Board {board_id} mudou durante o movimento",
            )

        return ChangeEntry(
            board_id=board_id,
            operation=Operation.MOVE_COLUMN,
            affected_entity_id=column_id,
            details=ColumnMoved(position_key=key, rebalanced=rebalanced),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            before_key=location.key,
            after_key=key,
        )

    def create_column(self, board_id, title='', after_column_id=LAST, expected_version=None,
                      actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        board_id = str(board_id)
        board = self.repository.read_board(board_id)
        if board is None:
            raise InvalidMoveTarget(f"Board {board_id} não existe")

        if after_column_id is LAST:
            ids = board.column_ids()
            after_id = ids[-1] if ids else None
        else:
            after_id = None if after_column_id is None else str(after_column_id)

        live = self._column_neighborhood(board, after_id)
        self._check_token(_NEW_ITEM, expected_version, live)

        key, rebalanced = self._place(board.columns, _NEW_ITEM, after_id, live)

        column_id = self.repository.insert_column(
            board_id, title, key, expected_version=board.version, rebalanced=rebalanced,
        )
        if column_id is None:
            raise OrderingConflict(board_id, message=f"Board {board_id} mudou durante a criação")

        return ChangeEntry(
            board_id=board_id,
            operation=Operation.CREATE_COLUMN,
            affected_entity_id=column_id,
            details=ColumnCreated(position_key=key, title=title, rebalanced=rebalanced),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            after_key=key,
        )

    def delete_column(self, column_id, actor_session_id='', actor_user_id=None,
                      operation_id=None) -> ChangeEntry:
        """Remove uma coluna vazia"""
        column_id = str(column_id)
        column = self.repository.read_column(column_id)
        if column is None:
            raise InvalidMoveTarget(f"Coluna {column_id} não existe")
        if column.cards:
            raise InvalidMoveTarget(f"Coluna {column_id} ainda tem {len(column.cards)} cartões")

        board = self.repository.read_board(column.board_id)
        before_key = board.key_of(column_id)
        if not self.repository.remove_column(column_id, board.board_id, board.version):
            raise OrderingConflict(column_id, message=f"Board {board.board_id} mudou durante a remoção")

        return ChangeEntry(
            board_id=board.board_id,
            operation=Operation.DELETE_COLUMN,
            affected_entity_id=column_id,
            details=ColumnDeleted(),
            actor_session_id=actor_session_id,
            actor_user_id=actor_user_id,
            operation_id=operation_id,
            before_key=before_key,
        )

    # === MANUTENÇÃO ===

    def rebalance_column(self, column_id, actor_session_id='') -> Optional[ChangeEntry]:
        """Chaves igualmente espaçadas para os cartões; None se já estão"""
        column = self.repository.read_column(column_id)
        if column is None:
            raise InvalidMoveTarget(f"Coluna {column_id} não existe")
        if self.space.is_balanced(column.cards):
            return None

        keys = tuple(self.space.rebalance(column.card_ids()))
        if not self.repository.write_column_keys(column.column_id, keys, column.version):
            raise OrderingConflict(column.column_id, message="Coluna mudou durante o rebalanceamento")

        return ChangeEntry(
            board_id=column.board_id,
            operation=Operation.REBALANCE_COLUMN,
            affected_entity_id=column.column_id,
            details=KeysRebalanced(parent_id=column.column_id, keys=keys),
            actor_session_id=actor_session_id,
        )

    def rebalance_board(self, board_id, actor_session_id='') -> Optional[ChangeEntry]:
        """Chaves igualmente espaçadas para as colunas; None se já estão"""
        board = self.repository.read_board(board_id)
        if board is None:
            raise InvalidMoveTarget(f"Board {board_id} não existe")
        if self.space.is_balanced(board.columns):
            return None

        keys = tuple(self.space.rebalance(board.column_ids()))
        if not self.repository.write_board_keys(board.board_id, keys, board.version):
            raise OrderingConflict(board.board_id, message="Board mudou durante o rebalanceamento")

        return ChangeEntry(
            board_id=board.board_id,
            operation=Operation.REBALANCE_BOARD,
            affected_entity_id=board.board_id,
            details=KeysRebalanced(parent_id=board.board_id, keys=keys),
            actor_session_id=actor_session_id,
        )
