# apps/board/events.py

"""
Contrato de eventos do board

Cada mutação aceita vira uma ChangeEntry imutável. O campo `operation`
é uma variante marcada: cada tipo de operação carrega apenas os detalhes
relevantes para ela, e os consumidores despacham de forma exaustiva.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, Optional, Tuple

from .positions import format_key, parse_key


class Operation(Enum):
    """Conjunto fechado de operações registradas no ChangeLog"""

    MOVE_CARD = 'moveCard'
    MOVE_COLUMN = 'moveColumn'
    CREATE_CARD = 'createCard'
    DELETE_CARD = 'deleteCard'
    CREATE_COLUMN = 'createColumn'
    DELETE_COLUMN = 'deleteColumn'
    REBALANCE_COLUMN = 'rebalanceColumn'
    REBALANCE_BOARD = 'rebalanceBoard'
    ASSIGN_CARD = 'assignCard'
    ADD_COMMENT = 'addComment'
    SET_DUE_DATE = 'setDueDate'

    @classmethod
    def from_str(cls, value: str) -> 'Operation':
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Operação desconhecida: {value!r}")


def _same(value):
    return value


def _optional_id(value):
    return None if value is None else str(value)


def _encode_keys(pairs):
    return [[item_id, format_key(key)] for item_id, key in pairs]


def _decode_keys(items):
    return tuple((str(item_id), parse_key(key)) for item_id, key in items or ())


def _decode_ids(items):
    return tuple(str(item) for item in items or ())


_PLAIN = (_same, _same)
_KEY = (format_key, parse_key)
_KEYS = (_encode_keys, _decode_keys)
_IDS = (list, _decode_ids)
_OPTIONAL_ID = (_same, _optional_id)


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


class _Details:
    """Serialização comum dos detalhes (camelCase no fio)"""

    _codecs: ClassVar[Dict] = {}

    def to_dict(self) -> Dict:
        return {
            _camel(f.name): self._codecs.get(f.name, _PLAIN)[0](getattr(self, f.name))
            for f in fields(self)
        }

    @classmethod
    def from_dict(cls, data) -> '_Details':
        data = data or {}
        kwargs = {}
        for f in fields(cls):
            wire_name = _camel(f.name)
            if wire_name in data:
                kwargs[f.name] = cls._codecs.get(f.name, _PLAIN)[1](data[wire_name])
        return cls(**kwargs)


@dataclass(frozen=True)
class CardMoved(_Details):
    column_id: str
    position_key: Decimal
    from_column_id: Optional[str] = None
    rebalanced: Tuple[Tuple[str, Decimal], ...] = ()

    _codecs: ClassVar[Dict] = {
        'position_key': _KEY, 'from_column_id': _OPTIONAL_ID, 'rebalanced': _KEYS,
    }


@dataclass(frozen=True)
class CardCreated(_Details):
    column_id: str
    position_key: Decimal
    title: str = ''
    rebalanced: Tuple[Tuple[str, Decimal], ...] = ()

    _codecs: ClassVar[Dict] = {'position_key': _KEY, 'rebalanced': _KEYS}


@dataclass(frozen=True)
class CardDeleted(_Details):
    column_id: str


@dataclass(frozen=True)
class ColumnMoved(_Details):
    position_key: Decimal
    rebalanced: Tuple[Tuple[str, Decimal], ...] = ()

    _codecs: ClassVar[Dict] = {'position_key': _KEY, 'rebalanced': _KEYS}


@dataclass(frozen=True)
class ColumnCreated(_Details):
    position_key: Decimal
    title: str = ''
    rebalanced: Tuple[Tuple[str, Decimal], ...] = ()

    _codecs: ClassVar[Dict] = {'position_key': _KEY, 'rebalanced': _KEYS}


@dataclass(frozen=True)
class ColumnDeleted(_Details):
    pass


@dataclass(frozen=True)
class KeysRebalanced(_Details):
    parent_id: str
    keys: Tuple[Tuple[str, Decimal], ...] = ()

    _codecs: ClassVar[Dict] = {'keys': _KEYS}


@dataclass(frozen=True)
class CardAssigned(_Details):
    added: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()

    _codecs: ClassVar[Dict] = {'added': _IDS, 'removed': _IDS}


@dataclass(frozen=True)
class CommentAdded(_Details):
    comment_id: str
    mentioned_user_ids: Tuple[str, ...] = ()
    excerpt: str = ''

    _codecs: ClassVar[Dict] = {'mentioned_user_ids': _IDS}


@dataclass(frozen=True)
class DueDateChanged(_Details):
    due_date: Optional[str] = None
    previous_due_date: Optional[str] = None
    watcher_ids: Tuple[str, ...] = ()

    _codecs: ClassVar[Dict] = {'watcher_ids': _IDS}


DETAILS_BY_OPERATION = {
    Operation.MOVE_CARD: CardMoved,
    Operation.MOVE_COLUMN: ColumnMoved,
    Operation.CREATE_CARD: CardCreated,
    Operation.DELETE_CARD: CardDeleted,
    Operation.CREATE_COLUMN: ColumnCreated,
    Operation.DELETE_COLUMN: ColumnDeleted,
    Operation.REBALANCE_COLUMN: KeysRebalanced,
    Operation.REBALANCE_BOARD: KeysRebalanced,
    Operation.ASSIGN_CARD: CardAssigned,
    Operation.ADD_COMMENT: CommentAdded,
    Operation.SET_DUE_DATE: DueDateChanged,
}

assert set(DETAILS_BY_OPERATION) == set(Operation)

ORDERING_OPERATIONS = frozenset({
    Operation.MOVE_CARD,
    Operation.MOVE_COLUMN,
    Operation.CREATE_CARD,
    Operation.DELETE_CARD,
    Operation.CREATE_COLUMN,
    Operation.DELETE_COLUMN,
    Operation.REBALANCE_COLUMN,
    Operation.REBALANCE_BOARD,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeEntry:
    """
    Uma mutação aceita e sequenciada do board

    Rascunhos saem do OrderingStore com sequence_number=None; o número
    é atribuído pelo ChangeLog no append.
    """

    board_id: str
    operation: Operation
    affected_entity_id: str
    details: _Details
    actor_session_id: str = ''
    actor_user_id: Optional[str] = None
    operation_id: Optional[str] = None
    before_key: Optional[Decimal] = None
    after_key: Optional[Decimal] = None
    sequence_number: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        expected = DETAILS_BY_OPERATION[self.operation]
        if not isinstance(self.details, expected):
            raise TypeError(
                f"{self.operation.value} exige {expected.__name__}, "
                f"recebeu {type(self.details).__name__}"
            )

    @property
    def entry_id(self) -> str:
        return f"{self.board_id}:{self.sequence_number}"

    @property
    def is_ordering(self) -> bool:
        return self.operation in ORDERING_OPERATIONS

    @property
    def new_parent_id(self) -> Optional[str]:
        details = self.details
        if isinstance(details, (CardMoved, CardCreated)):
            return details.column_id
        if isinstance(details, (ColumnMoved, ColumnCreated)):
            return self.board_id
        if isinstance(details, KeysRebalanced):
            return details.parent_id
        return None

    def sequenced(self, sequence_number: int) -> 'ChangeEntry':
        return replace(self, sequence_number=sequence_number)

    def to_payload(self) -> Dict:
        """Payload para consumidores (websocket, relay, replay HTTP)"""
        return {
            'sequenceNumber': self.sequence_number,
            'boardId': self.board_id,
            'operation': self.operation.value,
            'affectedEntityId': self.affected_entity_id,
            'newParentId': self.new_parent_id,
            'newPositionKey': format_key(self.after_key),
            'beforeKey': format_key(self.before_key),
            'actorSessionId': self.actor_session_id,
            'actorUserId': self.actor_user_id,
            'operationId': self.operation_id,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: Dict) -> 'ChangeEntry':
        operation = Operation.from_str(payload['operation'])
        details = DETAILS_BY_OPERATION[operation].from_dict(payload.get('details'))
        timestamp = payload.get('timestamp')
        sequence = payload.get('sequenceNumber')
        return cls(
            board_id=str(payload['boardId']),
            operation=operation,
            affected_entity_id=str(payload['affectedEntityId']),
            details=details,
            actor_session_id=payload.get('actorSessionId') or '',
            actor_user_id=_optional_id(payload.get('actorUserId')),
            operation_id=payload.get('operationId'),
            before_key=parse_key(payload.get('beforeKey')),
            after_key=parse_key(payload.get('newPositionKey')),
            sequence_number=None if sequence is None else int(sequence),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else utcnow(),
        )
