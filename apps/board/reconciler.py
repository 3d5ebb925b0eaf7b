# apps/board/reconciler.py

"""
ClientReconciler - lado consumidor da sincronização

Mantém uma cópia confirmada da ordem do board (só entradas do ChangeLog)
e uma visão = confirmada + movimentos otimistas pendentes. Cada
movimento pendente segue uma máquina de estados explícita:

    PENDING -> CONFIRMED | CONFLICTED | CANCELLED
    CONFLICTED -> RESYNCED

Depende apenas do contrato de eventos; o transporte é qualquer objeto
com move_card, move_column, read_since e board_state (o BoardSyncEngine
serve diretamente).
"""

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .events import ChangeEntry, Operation
from .exceptions import (
    InvalidMoveTarget,
    InvalidTransition,
    OrderingConflict,
    PersistenceUnavailable,
    PrecisionExhausted,
    ResyncRequired,
)
from .positions import Neighborhood, PositionSpace, neighborhood_of, parse_key, sort_siblings

logger = logging.getLogger(__name__)


class BoardShadow:
    """Cópia local da ordem de colunas e cartões de um board"""

    def __init__(self, board_id, columns=None, cards=None):
        self.board_id = str(board_id)
        self.columns: Dict[str, Decimal] = dict(columns or {})
        self.cards: Dict[str, Tuple[str, Decimal]] = dict(cards or {})

    @classmethod
    def from_state(cls, state: Dict) -> 'BoardShadow':
        """Monta a partir do formato de board_state()"""
        columns = {}
        cards = {}
        for column in state.get('columns', []):
            column_id = str(column['id'])
            columns[column_id] = parse_key(column['positionKey'])
            for card in column.get('cards', []):
                cards[str(card['id'])] = (column_id, parse_key(card['positionKey']))
        return cls(state['boardId'], columns, cards)

    def copy(self) -> 'BoardShadow':
        return BoardShadow(self.board_id, self.columns, self.cards)

    def column_pairs(self) -> List[Tuple[str, Decimal]]:
        return sort_siblings(self.columns.items())

    def card_pairs(self, column_id) -> List[Tuple[str, Decimal]]:
        column_id = str(column_id)
        return sort_siblings(
            (card_id, key) for card_id, (parent, key) in self.cards.items() if parent == column_id
        )

    def column_order(self) -> List[str]:
        return [column_id for column_id, _ in self.column_pairs()]

    def card_order(self, column_id) -> List[str]:
        return [card_id for card_id, _ in self.card_pairs(column_id)]

    def layout(self) -> Dict[str, List[str]]:
        """{coluna: [cartões]} na ordem das colunas"""
        return {column_id: self.card_order(column_id) for column_id in self.column_order()}

    # === APLICAÇÃO DE ENTRADAS ===

    def apply(self, entry: ChangeEntry):
        handler = self._HANDLERS[entry.operation]
        handler(self, entry)

    def _set_card_keys(self, pairs):
        for card_id, key in pairs:
            if card_id in self.cards:
                self.cards[card_id] = (self.cards[card_id][0], key)

    def _set_column_keys(self, pairs):
        for column_id, key in pairs:
            if column_id in self.columns:
                self.columns[column_id] = key

    def _place_card(self, entry):
        details = entry.details
        self.cards[entry.affected_entity_id] = (details.column_id, details.position_key)
        self._set_card_keys(details.rebalanced)

    def _delete_card(self, entry):
        self.cards.pop(entry.affected_entity_id, None)

    def _place_column(self, entry):
        details = entry.details
        self.columns[entry.affected_entity_id] = details.position_key
        self._set_column_keys(details.rebalanced)

    def _delete_column(self, entry):
        column_id = entry.affected_entity_id
        self.columns.pop(column_id, None)
        for card_id in [c for c, (parent, _) in self.cards.items() if parent == column_id]:
            del self.cards[card_id]

    def _rebalance_column(self, entry):
        self._set_card_keys(entry.details.keys)

    def _rebalance_board(self, entry):
        self._set_column_keys(entry.details.keys)

    def _ignore(self, entry):
        pass

    _HANDLERS = {
        Operation.MOVE_CARD: _place_card,
        Operation.CREATE_CARD: _place_card,
        Operation.DELETE_CARD: _delete_card,
        Operation.MOVE_COLUMN: _place_column,
        Operation.CREATE_COLUMN: _place_column,
        Operation.DELETE_COLUMN: _delete_column,
        Operation.REBALANCE_COLUMN: _rebalance_column,
        Operation.REBALANCE_BOARD: _rebalance_board,
        # atributos sem efeito na ordem
        Operation.ASSIGN_CARD: _ignore,
        Operation.ADD_COMMENT: _ignore,
        Operation.SET_DUE_DATE: _ignore,
    }

    # === MOVIMENTOS OTIMISTAS ===

    def _local_key(self, pairs, moving_id, after_id, space: PositionSpace):
        ordered = [pair for pair in pairs if pair[0] != moving_id]
        ids = [item_id for item_id, _ in ordered]
        index = 0 if after_id is None or after_id not in ids else ids.index(after_id) + 1
        lower = ordered[index - 1][1] if index > 0 else None
        upper = ordered[index][1] if index < len(ordered) else None
        try:
            return space.key_between(lower, upper), ()
        except PrecisionExhausted:
            ids.insert(index, moving_id)
            keys = space.rebalance(ids)
            return dict(keys)[moving_id], tuple(p for p in keys if p[0] != moving_id)

    def move_card_local(self, card_id, column_id, after_id, space: PositionSpace):
        key, rebalanced = self._local_key(self.card_pairs(column_id), card_id, after_id, space)
        self.cards[card_id] = (column_id, key)
        self._set_card_keys(rebalanced)

    def move_column_local(self, column_id, after_id, space: PositionSpace):
        key, rebalanced = self._local_key(self.column_pairs(), column_id, after_id, space)
        self.columns[column_id] = key
        self._set_column_keys(rebalanced)


assert set(BoardShadow._HANDLERS) == set(Operation)


class PendingState(Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CONFLICTED = 'conflicted'
    CANCELLED = 'cancelled'
    RESYNCED = 'resynced'


_TRANSITIONS = {
    PendingState.PENDING: {PendingState.CONFIRMED, PendingState.CONFLICTED, PendingState.CANCELLED},
    PendingState.CONFLICTED: {PendingState.RESYNCED},
}


@dataclass
class PendingMove:
    """Movimento otimista aguardando a resposta do OrderingStore"""

    operation_id: str
    operation: Operation
    entity_id: str
    parent_id: str
    after_id: Optional[str]
    expected_version: Optional[Neighborhood]
    state: PendingState = PendingState.PENDING
    resolved: bool = False
    entry: Optional[ChangeEntry] = None
    error: Optional[Exception] = None

    def transition(self, new_state: PendingState):
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(
                f"Movimento {self.operation_id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def matches(self, entry: ChangeEntry) -> bool:
        return (
            entry.operation_id == self.operation_id
            and entry.operation is self.operation
            and entry.affected_entity_id == self.entity_id
        )


class ClientReconciler:
    """Reconciliação otimista de uma sessão com a ordem autoritativa"""

    def __init__(self, board_id, session_id, transport, user_id=None,
                 space: Optional[PositionSpace] = None):
        self.board_id = str(board_id)
        self.session_id = session_id
        self.user_id = user_id
        self.transport = transport
        self.space = space or PositionSpace()
        self.confirmed = BoardShadow(self.board_id)
        self.watermark = 0
        self.blocked = False
        self.conflicted: List[PendingMove] = []
        self._pending: 'OrderedDict[str, PendingMove]' = OrderedDict()
        self._lock = threading.RLock()

    # === ESTADO ===

    def load(self, state: Optional[Dict] = None):
        """Carrega o estado completo do board (o da transporte, se não vier)"""
        with self._lock:
            state = state or self.transport.board_state(self.board_id)
            self.confirmed = BoardShadow.from_state(state)
            self.watermark = state.get('sequence', 0)
        return self

    @property
    def view(self) -> BoardShadow:
        """Ordem confirmada com os movimentos pendentes por cima"""
        with self._lock:
            shadow = self.confirmed.copy()
            for pending in self._pending.values():
                if pending.operation is Operation.MOVE_CARD:
                    shadow.move_card_local(pending.entity_id, pending.parent_id, pending.after_id, self.space)
                else:
                    shadow.move_column_local(pending.entity_id, pending.after_id, self.space)
            return shadow

    def pending(self) -> List[PendingMove]:
        with self._lock:
            return list(self._pending.values())

    # === PROPOSTA E ENVIO ===

    def _propose(self, operation, entity_id, parent_id, after_id, siblings) -> PendingMove:
        if self.blocked:
            raise ResyncRequired("Ressincronize antes de novos movimentos")
        try:
            expected = neighborhood_of(siblings, after_id, moving_id=entity_id)
        except KeyError:
            raise InvalidMoveTarget(f"Vizinho {after_id} não está na visão local")
        pending = PendingMove(
            operation_id=uuid.uuid4().hex,
            operation=operation,
            entity_id=entity_id,
            parent_id=parent_id,
            after_id=after_id,
            expected_version=expected,
        )
        self._pending[pending.operation_id] = pending
        return pending

    def propose_card_move(self, card_id, target_column_id, after_card_id=None) -> PendingMove:
        with self._lock:
            after_id = None if after_card_id is None else str(after_card_id)
            view = self.view
            return self._propose(
                Operation.MOVE_CARD, str(card_id), str(target_column_id), after_id,
                view.card_pairs(target_column_id),
            )

    def propose_column_move(self, column_id, after_column_id=None) -> PendingMove:
        with self._lock:
            after_id = None if after_column_id is None else str(after_column_id)
            return self._propose(
                Operation.MOVE_COLUMN, str(column_id), self.board_id, after_id,
                self.view.column_pairs(),
            )

    def _call_transport(self, pending: PendingMove) -> ChangeEntry:
        common = dict(
            expected_version=pending.expected_version,
            actor_session_id=self.session_id,
            actor_user_id=self.user_id,
            operation_id=pending.operation_id,
        )
        if pending.operation is Operation.MOVE_CARD:
            return self.transport.move_card(
                pending.entity_id, pending.parent_id, pending.after_id, **common
            )
        return self.transport.move_column(
            pending.entity_id, pending.parent_id, pending.after_id, **common
        )

    def submit(self, pending: PendingMove) -> ChangeEntry:
        """Envia o movimento pendente ao OrderingStore"""
        with self._lock:
            if pending.state is not PendingState.PENDING:
                raise InvalidTransition(f"Movimento {pending.operation_id} já está {pending.state.value}")

        try:
            entry = self._call_transport(pending)
        except OrderingConflict as e:
            with self._lock:
                pending.resolved = True
                pending.error = e
                # Cancelado durante a chamada: continua CANCELLED
                if pending.state is PendingState.PENDING:
                    pending.transition(PendingState.CONFLICTED)
                    self.conflicted.append(pending)
                self._pending.pop(pending.operation_id, None)
                self.blocked = True
            logger.info(f"🔄 Conflito no movimento {pending.operation_id}: {e}")
            raise
        except (PersistenceUnavailable, TimeoutError) as e:
            with self._lock:
                pending.resolved = True
                pending.error = e
                if pending.state is PendingState.PENDING:
                    pending.transition(PendingState.CANCELLED)
                self._pending.pop(pending.operation_id, None)
            logger.warning(f"⚠️ Falha de transporte no movimento {pending.operation_id}: {e}")
            self.resync()
            raise

        with self._lock:
            pending.resolved = True
            self.receive(entry)
        return entry

    def _submit_with_retry(self, propose) -> ChangeEntry:
        pending = propose()
        try:
            return self.submit(pending)
        except OrderingConflict:
            self.resync()
            if pending.state is PendingState.CANCELLED:
                raise
            return self.submit(propose())

    def move_card(self, card_id, target_column_id, after_card_id=None) -> ChangeEntry:
        """Propõe e envia; após um conflito ressincroniza e tenta uma vez mais"""
        return self._submit_with_retry(
            lambda: self.propose_card_move(card_id, target_column_id, after_card_id)
        )

    def move_column(self, column_id, after_column_id=None) -> ChangeEntry:
        return self._submit_with_retry(lambda: self.propose_column_move(column_id, after_column_id))

    def cancel(self, operation_id) -> PendingMove:
        """Só é possível enquanto o OrderingStore ainda não respondeu"""
        with self._lock:
            pending = self._pending.get(operation_id)
            if pending is None or pending.resolved:
                raise InvalidTransition(f"Movimento {operation_id} não pode mais ser cancelado")
            pending.transition(PendingState.CANCELLED)
            del self._pending[operation_id]
            return pending

    # === RECEPÇÃO ===

    def _apply(self, entry: ChangeEntry):
        self.confirmed.apply(entry)
        self.watermark = entry.sequence_number

        if entry.actor_session_id == self.session_id and entry.operation_id in self._pending:
            pending = self._pending[entry.operation_id]
            if pending.matches(entry):
                pending.entry = entry
                pending.resolved = True
                pending.transition(PendingState.CONFIRMED)
                del self._pending[entry.operation_id]

    def receive(self, entry: ChangeEntry) -> bool:
        """
        Aplica uma entrada recebida; repetidas (abaixo da marca d'água)
        são descartadas. Lacunas são preenchidas pelo read_since.
        """
        with self._lock:
            if entry.board_id != self.board_id or entry.sequence_number <= self.watermark:
                return False

            if entry.sequence_number > self.watermark + 1:
                for missed in self.transport.read_since(self.board_id, self.watermark):
                    if missed.sequence_number >= entry.sequence_number:
                        break
                    self._apply(missed)

            self._apply(entry)
            return True

    def resync(self):
        """Alcança o ChangeLog e libera novos movimentos"""
        with self._lock:
            for entry in self.transport.read_since(self.board_id, self.watermark):
                if entry.sequence_number > self.watermark:
                    self._apply(entry)
            for pending in self.conflicted:
                pending.transition(PendingState.RESYNCED)
            self.conflicted.clear()
            self.blocked = False
            logger.info(f"🔁 Sessão {self.session_id} ressincronizada até {self.watermark}")
