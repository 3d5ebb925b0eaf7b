# apps/board/persistence.py

"""
Colaborador de persistência do board

O OrderingStore é o único chamador dos métodos de escrita de posição.
Cada escrita é um compare-and-set sobre a versão otimista do pai
(coluna para cartões, board para colunas): se a versão mudou entre a
leitura e a escrita, o método devolve False e nada é gravado.

Duas implementações:
- MemoryRepository: estado em memória, usado em testes e no modo `memory`
- OrmRepository: Django ORM sobre os modelos de apps.core
"""

import copy
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from django.db import InterfaceError, OperationalError, transaction
from django.db.models import F

from .exceptions import PersistenceUnavailable
from .positions import DEFAULT_STEP, format_key, sort_siblings

logger = logging.getLogger(__name__)

KeyPairs = Sequence[Tuple[str, Decimal]]


@dataclass(frozen=True)
class ColumnSnapshot:
    """Cartões ativos de uma coluna, ordenados, com a versão lida"""

    column_id: str
    board_id: str
    cards: Tuple[Tuple[str, Decimal], ...]
    version: int

    def card_ids(self) -> List[str]:
        return [card_id for card_id, _ in self.cards]

    def key_of(self, card_id) -> Optional[Decimal]:
        return dict(self.cards).get(str(card_id))


@dataclass(frozen=True)
class BoardSnapshot:
    """Colunas de um board, ordenadas, com a versão lida"""

    board_id: str
    columns: Tuple[Tuple[str, Decimal], ...]
    version: int

    def column_ids(self) -> List[str]:
        return [column_id for column_id, _ in self.columns]

    def key_of(self, column_id) -> Optional[Decimal]:
        return dict(self.columns).get(str(column_id))


class Location(NamedTuple):
    parent_id: str
    board_id: str
    key: Decimal


class PositionRepository(ABC):
    """Leitura e escrita das posições de colunas e cartões"""

    @abstractmethod
    def read_column(self, column_id) -> Optional[ColumnSnapshot]:
        pass

    @abstractmethod
    def read_board(self, board_id) -> Optional[BoardSnapshot]:
        pass

    @abstractmethod
    def locate_card(self, card_id) -> Optional[Location]:
        """Coluna, board e chave de um cartão ativo (None se não existe)"""

    @abstractmethod
    def locate_column(self, column_id) -> Optional[Location]:
        pass

    @abstractmethod
    def write_card_position(self, card_id, source_column_id, column_id, key,
                            expected_version, rebalanced: KeyPairs = ()) -> bool:
        pass

    @abstractmethod
    def write_column_position(self, column_id, board_id, key,
                              expected_version, rebalanced: KeyPairs = ()) -> bool:
        pass

    @abstractmethod
    def insert_card(self, column_id, title, key, expected_version,
                    rebalanced: KeyPairs = (), created_by=None) -> Optional[str]:
        """Cria o cartão e devolve o id, ou None em conflito de versão"""

    @abstractmethod
    def remove_card(self, card_id, column_id, expected_version) -> bool:
        pass

    @abstractmethod
    def insert_column(self, board_id, title, key, expected_version,
                      rebalanced: KeyPairs = ()) -> Optional[str]:
        pass

    @abstractmethod
    def remove_column(self, column_id, board_id, expected_version) -> bool:
        pass

    @abstractmethod
    def write_column_keys(self, column_id, keys: KeyPairs, expected_version) -> bool:
        pass

    @abstractmethod
    def write_board_keys(self, board_id, keys: KeyPairs, expected_version) -> bool:
        pass

    @abstractmethod
    def atomic(self):
        """Context manager: escrita + append no registro, tudo ou nada"""


class CardRepository(ABC):
    """Atributos de cartão que não afetam a ordenação"""

    @abstractmethod
    def card_context(self, card_id) -> Optional[Dict]:
        """board_id, column_id, title, assignees e due_date do cartão"""

    @abstractmethod
    def update_assignees(self, card_id, added: Iterable[str],
                         removed: Iterable[str]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        """Aplica a mudança e devolve (adicionados, removidos) efetivos"""

    @abstractmethod
    def save_comment(self, card_id, author_id, text, mentioned_ids: Iterable[str]) -> str:
        pass

    @abstractmethod
    def update_due_date(self, card_id, due_date: Optional[str]) -> Optional[str]:
        """Grava o prazo (ISO) e devolve o anterior"""

    @abstractmethod
    def describe_board(self, board_id) -> Optional[List[Dict]]:
        """Colunas com títulos e cartões, já ordenados"""


# =============================================================================
# MEMÓRIA
# =============================================================================

class MemoryRepository(PositionRepository, CardRepository):
    """
    Repositório em memória

    `available = False` simula o colaborador fora do ar: toda chamada
    levanta PersistenceUnavailable.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.boards: Dict[str, Dict] = {}
        self.columns: Dict[str, Dict] = {}
        self.cards: Dict[str, Dict] = {}
        self.comments: Dict[str, Dict] = {}
        self.available = True
        # {(tabela, id): registro original ou None} durante atomic()
        self._journal: Optional[Dict[Tuple[str, str], Optional[Dict]]] = None

    def _check(self):
        if not self.available:
            raise PersistenceUnavailable("Repositório em memória indisponível")

    def _next_id(self) -> str:
        return str(next(self._ids))

    @contextmanager
    def atomic(self):
        """
        Desfaz as escritas do bloco se ele falhar

        Só os registros tocados são copiados (na primeira escrita de cada
        um), então o custo é proporcional ao movimento, não ao board.
        """
        with self._lock:
            self._check()
            if self._journal is not None:
                yield
                return
            self._journal = {}
            try:
                yield
            except BaseException:
                self._rollback()
                raise
            finally:
                self._journal = None

    def _touch(self, table, record_id):
        if self._journal is None or (table, record_id) in self._journal:
            return
        self._journal[(table, record_id)] = copy.deepcopy(getattr(self, table).get(record_id))

    def _rollback(self):
        for (table, record_id), original in self._journal.items():
            records = getattr(self, table)
            if original is None:
                records.pop(record_id, None)
            else:
                records[record_id] = original

    # === SEMENTE (testes e modo memory) ===

    def add_board(self, title='', board_id=None) -> str:
        with self._lock:
            board_id = str(board_id) if board_id is not None else self._next_id()
            self._touch('boards', board_id)
            self.boards[board_id] = {'title': title, 'version': 0}
            return board_id

    def add_column(self, board_id, title='', key=None, column_id=None) -> str:
        with self._lock:
            board_id = str(board_id)
            if key is None:
                keys = [c['key'] for c in self.columns.values() if c['board_id'] == board_id]
                key = max(keys) + DEFAULT_STEP if keys else DEFAULT_STEP
            column_id = str(column_id) if column_id is not None else self._next_id()
            self._touch('columns', column_id)
            self.columns[column_id] = {
                'board_id': board_id, 'title': title, 'key': Decimal(key), 'version': 0,
            }
            return column_id

    def add_card(self, column_id, title='', key=None, card_id=None, assignees=()) -> str:
        with self._lock:
            column_id = str(column_id)
            if key is None:
                keys = [c['key'] for c in self._active_cards(column_id)]
                key = max(keys) + DEFAULT_STEP if keys else DEFAULT_STEP
            card_id = str(card_id) if card_id is not None else self._next_id()
            self._touch('cards', card_id)
            self.cards[card_id] = {
                'column_id': column_id, 'title': title, 'key': Decimal(key),
                'archived': False, 'assignees': set(map(str, assignees)), 'due_date': None,
            }
            return card_id

    def _active_cards(self, column_id):
        return [
            dict(card, id=card_id) for card_id, card in self.cards.items()
            if card['column_id'] == column_id and not card['archived']
        ]

    # === LEITURA ===

    def read_column(self, column_id):
        with self._lock:
            self._check()
            column = self.columns.get(str(column_id))
            if column is None:
                return None
            cards = sort_siblings((c['id'], c['key']) for c in self._active_cards(str(column_id)))
            return ColumnSnapshot(str(column_id), column['board_id'], tuple(cards), column['version'])

    def read_board(self, board_id):
        with self._lock:
            self._check()
            board = self.boards.get(str(board_id))
            if board is None:
                return None
            columns = sort_siblings(
                (column_id, c['key']) for column_id, c in self.columns.items()
                if c['board_id'] == str(board_id)
            )
            return BoardSnapshot(str(board_id), tuple(columns), board['version'])

    def locate_card(self, card_id):
        with self._lock:
            self._check()
            card = self.cards.get(str(card_id))
            if card is None or card['archived']:
                return None
            board_id = self.columns[card['column_id']]['board_id']
            return Location(card['column_id'], board_id, card['key'])

    def locate_column(self, column_id):
        with self._lock:
            self._check()
            column = self.columns.get(str(column_id))
            if column is None:
                return None
            return Location(column['board_id'], column['board_id'], column['key'])

    # === ESCRITA (compare-and-set) ===

    def _bump(self, table, record_id, expected_version) -> bool:
        record = getattr(self, table).get(str(record_id))
        if record is None or record['version'] != expected_version:
            return False
        self._touch(table, str(record_id))
        record['version'] += 1
        return True

    def _apply_card_keys(self, pairs):
        for card_id, key in pairs:
            self._touch('cards', str(card_id))
            self.cards[str(card_id)]['key'] = key

    def _apply_column_keys(self, pairs):
        for column_id, key in pairs:
            self._touch('columns', str(column_id))
            self.columns[str(column_id)]['key'] = key

    def write_card_position(self, card_id, source_column_id, column_id, key,
                            expected_version, rebalanced=()):
        with self._lock:
            self._check()
            if not self._bump('columns', column_id, expected_version):
                return False
            self._touch('cards', str(card_id))
            card = self.cards[str(card_id)]
            card['column_id'] = str(column_id)
            card['key'] = key
            self._apply_card_keys(rebalanced)
            if str(source_column_id) != str(column_id):
                self._touch('columns', str(source_column_id))
                self.columns[str(source_column_id)]['version'] += 1
            return True

    def write_column_position(self, column_id, board_id, key, expected_version, rebalanced=()):
        with self._lock:
            self._check()
            if not self._bump('boards', board_id, expected_version):
                return False
            self._touch('columns', str(column_id))
            self.columns[str(column_id)]['key'] = key
            self._apply_column_keys(rebalanced)
            return True

    def insert_card(self, column_id, title, key, expected_version, rebalanced=(), created_by=None):
        with self._lock:
            self._check()
            if not self._bump('columns', column_id, expected_version):
                return None
            self._apply_card_keys(rebalanced)
            return self.add_card(column_id, title=title, key=key)

    def remove_card(self, card_id, column_id, expected_version):
        with self._lock:
            self._check()
            if not self._bump('columns', column_id, expected_version):
                return False
            self._touch('cards', str(card_id))
            self.cards[str(card_id)]['archived'] = True
            return True

    def insert_column(self, board_id, title, key, expected_version, rebalanced=()):
        with self._lock:
            self._check()
            if not self._bump('boards', board_id, expected_version):
                return None
            self._apply_column_keys(rebalanced)
            return self.add_column(board_id, title=title, key=key)

    def remove_column(self, column_id, board_id, expected_version):
        with self._lock:
            self._check()
            if not self._bump('boards', board_id, expected_version):
                return False
            self._touch('columns', str(column_id))
            del self.columns[str(column_id)]
            for card_id in [i for i, c in self.cards.items() if c['column_id'] == str(column_id)]:
                self._touch('cards', card_id)
                del self.cards[card_id]
            return True

    def write_column_keys(self, column_id, keys, expected_version):
        with self._lock:
            self._check()
            if not self._bump('columns', column_id, expected_version):
                return False
            self._apply_card_keys(keys)
            return True

    def write_board_keys(self, board_id, keys, expected_version):
        with self._lock:
            self._check()
            if not self._bump('boards', board_id, expected_version):
                return False
            self._apply_column_keys(keys)
            return True

    # === ATRIBUTOS DE CARTÃO ===

    def card_context(self, card_id):
        with self._lock:
            self._check()
            card = self.cards.get(str(card_id))
            if card is None or card['archived']:
                return None
            return {
                'card_id': str(card_id),
                'column_id': card['column_id'],
                'board_id': self.columns[card['column_id']]['board_id'],
                'title': card['title'],
                'assignees': tuple(sorted(card['assignees'])),
                'due_date': card['due_date'],
            }

    def update_assignees(self, card_id, added, removed):
        with self._lock:
            self._check()
            self._touch('cards', str(card_id))
            current = self.cards[str(card_id)]['assignees']
            effective_added = tuple(sorted({str(u) for u in added} - current))
            effective_removed = tuple(sorted({str(u) for u in removed} & current))
            current.update(effective_added)
            current.difference_update(effective_removed)
            return effective_added, effective_removed

    def save_comment(self, card_id, author_id, text, mentioned_ids):
        with self._lock:
            self._check()
            comment_id = self._next_id()
            self._touch('comments', comment_id)
            self.comments[comment_id] = {
                'card_id': str(card_id), 'author_id': str(author_id),
                'text': text, 'mentioned': tuple(mentioned_ids),
            }
            return comment_id

    def update_due_date(self, card_id, due_date):
        with self._lock:
            self._check()
            self._touch('cards', str(card_id))
            card = self.cards[str(card_id)]
            previous, card['due_date'] = card['due_date'], due_date
            return previous

    def describe_board(self, board_id):
        with self._lock:
            self._check()
            snapshot = self.read_board(board_id)
            if snapshot is None:
                return None
            result = []
            for column_id, key in snapshot.columns:
                column = self.read_column(column_id)
                result.append({
                    'id': column_id,
                    'title': self.columns[column_id]['title'],
                    'positionKey': format_key(key),
                    'cards': [
                        {'id': card_id, 'title': self.cards[card_id]['title'],
                         'positionKey': format_key(card_key)}
                        for card_id, card_key in column.cards
                    ],
                })
            return result


# =============================================================================
# DJANGO ORM
# =============================================================================

def _pk(value) -> Optional[int]:
    """Ids chegam como string do fio; ids não numéricos simplesmente não existem"""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class OrmRepository(PositionRepository, CardRepository):
    """
    Repositório sobre o Django ORM

    O compare-and-set é um UPDATE ... WHERE versao = esperada; o número
    de linhas afetadas decide se a escrita venceu.
    """

    @contextmanager
    def _guard(self):
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            logger.error(f"❌ Banco indisponível: {e}")
            raise PersistenceUnavailable(str(e)) from e

    @contextmanager
    def atomic(self):
        with self._guard():
            with transaction.atomic():
                yield

    @staticmethod
    def _bump(model, pk, expected_version) -> bool:
        return model.objects.filter(pk=pk, versao=expected_version).update(
            versao=F('versao') + 1
        ) == 1

    # === LEITURA ===

    def read_column(self, column_id):
        from apps.core.models import Cartao, Coluna

        pk = _pk(column_id)
        with self._guard():
            column = Coluna.objects.filter(pk=pk).values('board_id', 'versao').first()
            if column is None:
                return None
            cards = Cartao.objects.filter(coluna_id=pk, arquivado=False).values_list('id', 'posicao')
            return ColumnSnapshot(
                str(pk), str(column['board_id']), tuple(sort_siblings(cards)), column['versao']
            )

    def read_board(self, board_id):
        from apps.core.models import Board, Coluna

        pk = _pk(board_id)
        with self._guard():
            versao = Board.objects.filter(pk=pk).values_list('versao', flat=True).first()
            if versao is None:
                return None
            columns = Coluna.objects.filter(board_id=pk).values_list('id', 'posicao')
            return BoardSnapshot(str(pk), tuple(sort_siblings(columns)), versao)

    def locate_card(self, card_id):
        from apps.core.models import Cartao

        with self._guard():
            row = Cartao.objects.filter(pk=_pk(card_id), arquivado=False).values(
                'coluna_id', 'coluna__board_id', 'posicao'
            ).first()
        if row is None:
            return None
        return Location(str(row['coluna_id']), str(row['coluna__board_id']), row['posicao'])

    def locate_column(self, column_id):
        from apps.core.models import Coluna

        with self._guard():
            row = Coluna.objects.filter(pk=_pk(column_id)).values('board_id', 'posicao').first()
        if row is None:
            return None
        return Location(str(row['board_id']), str(row['board_id']), row['posicao'])

    # === ESCRITA (compare-and-set) ===

    @staticmethod
    def _write_keys(model, pairs):
        for pk, key in pairs:
            model.objects.filter(pk=_pk(pk)).update(posicao=key)

    def write_card_position(self, card_id, source_column_id, column_id, key,
                            expected_version, rebalanced=()):
        from apps.core.models import Cartao, Coluna

        with self._guard():
            if not self._bump(Coluna, _pk(column_id), expected_version):
                return False
            Cartao.objects.filter(pk=_pk(card_id)).update(coluna_id=_pk(column_id), posicao=key)
            self._write_keys(Cartao, rebalanced)
            if str(source_column_id) != str(column_id):
                Coluna.objects.filter(pk=_pk(source_column_id)).update(versao=F('versao') + 1)
            return True

    def write_column_position(self, column_id, board_id, key, expected_version, rebalanced=()):
        from apps.core.models import Board, Coluna

        with self._guard():
            if not self._bump(Board, _pk(board_id), expected_version):
                return False
            Coluna.objects.filter(pk=_pk(column_id)).update(posicao=key)
            self._write_keys(Coluna, rebalanced)
            return True

    def insert_card(self, column_id, title, key, expected_version, rebalanced=(), created_by=None):
        from apps.core.models import Cartao, Coluna

        with self._guard():
            if not self._bump(Coluna, _pk(column_id), expected_version):
                return None
            self._write_keys(Cartao, rebalanced)
            cartao = Cartao.objects.create(
                titulo=title, coluna_id=_pk(column_id), posicao=key,
                criado_por_id=_pk(created_by),
            )
            return str(cartao.pk)

    def remove_card(self, card_id, column_id, expected_version):
        from apps.core.models import Cartao, Coluna

        with self._guard():
            if not self._bump(Coluna, _pk(column_id), expected_version):
                return False
            Cartao.objects.filter(pk=_pk(card_id)).update(arquivado=True)
            return True

    def insert_column(self, board_id, title, key, expected_version, rebalanced=()):
        from apps.core.models import Board, Coluna

        with self._guard():
            if not self._bump(Board, _pk(board_id), expected_version):
                return None
            self._write_keys(Coluna, rebalanced)
            coluna = Coluna.objects.create(titulo=title, board_id=_pk(board_id), posicao=key)
            return str(coluna.pk)

    def remove_column(self, column_id, board_id, expected_version):
        from apps.core.models import Board, Coluna

        with self._guard():
            if not self._bump(Board, _pk(board_id), expected_version):
                return False
            Coluna.objects.filter(pk=_pk(column_id)).delete()
            return True

    def write_column_keys(self, column_id, keys, expected_version):
        from apps.core.models import Cartao, Coluna

        with self._guard():
            if not self._bump(Coluna, _pk(column_id), expected_version):
                return False
            self._write_keys(Cartao, keys)
            return True

    def write_board_keys(self, board_id, keys, expected_version):
        from apps.core.models import Board, Coluna

        with self._guard():
            if not self._bump(Board, _pk(board_id), expected_version):
                return False
            self._write_keys(Coluna, keys)
            return True

    # === ATRIBUTOS DE CARTÃO ===

    def card_context(self, card_id):
        from apps.core.models import Cartao

        with self._guard():
            cartao = Cartao.objects.select_related('coluna').filter(
                pk=_pk(card_id), arquivado=False
            ).first()
            if cartao is None:
                return None
            assignees = cartao.responsaveis.values_list('id', flat=True)
            return {
                'card_id': str(cartao.pk),
                'column_id': str(cartao.coluna_id),
                'board_id': str(cartao.coluna.board_id),
                'title': cartao.titulo,
                'assignees': tuple(sorted(str(pk) for pk in assignees)),
                'due_date': cartao.prazo.isoformat() if cartao.prazo else None,
            }

    def update_assignees(self, card_id, added, removed):
        from apps.core.models import Cartao, Usuario

        with self._guard():
            cartao = Cartao.objects.get(pk=_pk(card_id))
            current = {str(pk) for pk in cartao.responsaveis.values_list('id', flat=True)}
            wanted = {str(u) for u in added} - current
            existing = {
                str(pk) for pk in
                Usuario.objects.filter(pk__in=[_pk(u) for u in wanted]).values_list('id', flat=True)
            }
            effective_added = tuple(sorted(existing))
            effective_removed = tuple(sorted({str(u) for u in removed} & current))
            if effective_added:
                cartao.responsaveis.add(*[_pk(u) for u in effective_added])
            if effective_removed:
                cartao.responsaveis.remove(*[_pk(u) for u in effective_removed])
            return effective_added, effective_removed

    def save_comment(self, card_id, author_id, text, mentioned_ids):
        from apps.core.models import Comentario

        with self._guard():
            comentario = Comentario.objects.create(
                cartao_id=_pk(card_id), usuario_id=_pk(author_id), texto=text
            )
            mentioned = [_pk(u) for u in mentioned_ids]
            if mentioned:
                comentario.mencionados.add(*mentioned)
            return str(comentario.pk)

    def update_due_date(self, card_id, due_date):
        from apps.core.models import Cartao

        with self._guard():
            cartao = Cartao.objects.get(pk=_pk(card_id))
            previous = cartao.prazo.isoformat() if cartao.prazo else None
            cartao.prazo = due_date or None
            cartao.save(update_fields=['prazo', 'atualizado_em'])
            return previous

    def describe_board(self, board_id):
        from apps.core.models import Cartao, Coluna

        pk = _pk(board_id)
        with self._guard():
            colunas = list(Coluna.objects.filter(board_id=pk).order_by('posicao', 'id'))
            if not colunas and self.read_board(board_id) is None:
                return None
            cartoes = Cartao.objects.filter(
                coluna__board_id=pk, arquivado=False
            ).order_by('posicao', 'id').values('id', 'titulo', 'posicao', 'coluna_id')
            by_column: Dict[int, List[Dict]] = {}
            for cartao in cartoes:
                by_column.setdefault(cartao['coluna_id'], []).append({
                    'id': str(cartao['id']),
                    'title': cartao['titulo'],
                    'positionKey': format_key(cartao['posicao']),
                })
            return [
                {
                    'id': str(coluna.pk),
                    'title': coluna.titulo,
                    'positionKey': format_key(coluna.posicao),
                    'cards': by_column.get(coluna.pk, []),
                }
                for coluna in colunas
            ]
