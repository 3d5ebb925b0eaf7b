# apps/board/services.py

"""
BoardSyncEngine - liga OrderingStore, ChangeLog, SyncBroadcaster e
NotificationFanout

Toda mutação segue o mesmo caminho:

    serialized(board) -> repository.atomic() -> OrderingStore -> ChangeLog.append

Os listeners do ChangeLog (broadcaster e notificações) só rodam depois
que a entrada está durável. Falhas de persistência são repetidas com
backoff exponencial; cada tentativa recalcula a chave contra os vizinhos
atuais. Conflitos nunca são repetidos aqui: voltam ao chamador.
"""

import logging
import time
from datetime import date
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .broadcaster import ChannelLayerRelay, SubscriptionRegistry, SyncBroadcaster
from .changelog import ChangeLog, OrmChangeLog
from .events import CardAssigned, ChangeEntry, CommentAdded, DueDateChanged, Operation
from .exceptions import InvalidMoveTarget, OrderingConflict, PersistenceUnavailable
from .mentions import MemoryDirectory, OrmDirectory, UserDirectory, resolve_mentions
from .notifications import MemoryInbox, NotificationFanout, NotificationInbox, OrmInbox
from .ordering import LAST, OrderingStore
from .persistence import MemoryRepository, OrmRepository
from .positions import Neighborhood, PositionSpace
from .reconciler import ClientReconciler

logger = logging.getLogger(__name__)

DEFAULTS = {
    'STORAGE': 'orm',
    'RELAY': 'local',
    'POSITION_STEP': '1',
    'POSITION_DECIMALS': 10,
    'PERSISTENCE_RETRIES': 3,
    'PERSISTENCE_BACKOFF': 0.05,
    'PERSISTENCE_MAX_BACKOFF': 1.0,
    'NOTIFICATION_TTL_DAYS': 30,
    'MOVE_TIMEOUT': 5.0,
}

EXCERPT_LENGTH = 140


def _token(expected_version) -> Optional[Neighborhood]:
    if expected_version is None or isinstance(expected_version, Neighborhood):
        return expected_version
    return Neighborhood.from_dict(expected_version)


def _due_date(value) -> Optional[str]:
    """Normaliza o prazo para ISO (YYYY-MM-DD); levanta ValueError se inválido"""
    if value in (None, ''):
        return None
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value)).isoformat()


class BoardSyncEngine:
    """Motor de ordenação e sincronização em tempo real dos boards"""

    def __init__(self, repository, changelog, inbox: NotificationInbox, directory: UserDirectory,
                 space: Optional[PositionSpace] = None, relay=None, retries: int = 3,
                 backoff: float = 0.05, max_backoff: float = 1.0, ttl_days: int = 30,
                 move_timeout: float = 5.0, sleep: Callable[[float], None] = time.sleep):
        self.repository = repository
        self.changelog = changelog
        self.directory = directory
        self.store = OrderingStore(repository, space)
        self.broadcaster = SyncBroadcaster(changelog, SubscriptionRegistry(), relay)
        self.fanout = NotificationFanout(inbox, push=self.broadcaster.notify_user, ttl_days=ttl_days)
        self.retries = retries
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.move_timeout = move_timeout
        self._sleep = sleep
        self.running = False

        changelog.add_listener(self.broadcaster.publish)
        changelog.add_listener(self.fanout.process)

    # === CICLO DE VIDA ===

    def start(self):
        if not self.running:
            self.broadcaster.start()
            self.running = True
            logger.info(f"🚀 Motor de sincronização iniciado ({self.broadcaster.instance_id})")
        return self

    def shutdown(self):
        if self.running:
            self.broadcaster.shutdown()
            self.running = False
            logger.info("🛑 Motor de sincronização encerrado")

    # === NÚCLEO TRANSACIONAL ===

    def _commit(self, resolve_board: Callable[[], Optional[str]],
                mutate: Callable[[], Optional[ChangeEntry]]) -> Optional[ChangeEntry]:
        """
        Executa `mutate` serializado por board e dentro de uma transação,
        fazendo o append do rascunho no ChangeLog
        """
        delay = self.backoff
        attempt = 0
        while True:
            try:
                board_id = resolve_board()
                if board_id is None:
                    raise InvalidMoveTarget("Destino inexistente")
                with self.store.serialized(board_id):
                    with self.repository.atomic():
                        draft = mutate()
                        if draft is None:
                            return None
                        return self.changelog.append(draft)
            except PersistenceUnavailable as e:
                attempt += 1
                if attempt > self.retries:
                    logger.error(f"❌ Persistência indisponível após {self.retries} tentativas: {e}")
                    raise
                logger.warning(
                    f"⚠️ Persistência indisponível, tentativa {attempt}/{self.retries} em {delay:.2f}s"
                )
                self._sleep(delay)
                delay = min(delay * 2, self.max_backoff)
            except OrderingConflict as e:
                logger.info(f"🔄 {e}")
                raise

    # === ORDENAÇÃO ===

    def move_card(self, card_id, target_column_id, after_card_id=None, expected_version=None,
                  actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        token = _token(expected_version)
        return self._commit(
            lambda: self.store.board_for_column(target_column_id),
            lambda: self.store.move_card(
                card_id, target_column_id, after_card_id, token,
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            ),
        )

    def move_column(self, column_id, board_id, after_column_id=None, expected_version=None,
                    actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        token = _token(expected_version)
        return self._commit(
            lambda: str(board_id),
            lambda: self.store.move_column(
                column_id, board_id, after_column_id, token,
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            ),
        )

    def create_card(self, column_id, title='', after_card_id=LAST, expected_version=None,
                    actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        token = _token(expected_version)
        return self._commit(
            lambda: self.store.board_for_column(column_id),
            lambda: self.store.create_card(
                column_id, title, after_card_id, token,
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            ),
        )

    def delete_card(self, card_id, actor_session_id='', actor_user_id=None,
                    operation_id=None) -> ChangeEntry:
        return self._commit(
            lambda: self.store.board_for_card(card_id),
            lambda: self.store.delete_card(
                card_id, actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id), operation_id=operation_id,
            ),
        )

    def create_column(self, board_id, title='', after_column_id=LAST, expected_version=None,
                      actor_session_id='', actor_user_id=None, operation_id=None) -> ChangeEntry:
        token = _token(expected_version)
        return self._commit(
            lambda: str(board_id),
            lambda: self.store.create_column(
                board_id, title, after_column_id, token,
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            ),
        )

    def delete_column(self, column_id, actor_session_id='', actor_user_id=None,
                      operation_id=None) -> ChangeEntry:
        return self._commit(
            lambda: self.store.board_for_column(column_id),
            lambda: self.store.delete_column(
                column_id, actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id), operation_id=operation_id,
            ),
        )

    def rebalance_column(self, column_id) -> Optional[ChangeEntry]:
        return self._commit(
            lambda: self.store.board_for_column(column_id),
            lambda: self.store.rebalance_column(column_id, actor_session_id='manutencao'),
        )

    def rebalance_board(self, board_id) -> Optional[ChangeEntry]:
        return self._commit(
            lambda: str(board_id),
            lambda: self.store.rebalance_board(board_id, actor_session_id='manutencao'),
        )

    # === ATRIBUTOS DE CARTÃO ===

    def _card_context(self, card_id) -> Dict:
        context = self.repository.card_context(card_id)
        if context is None:
            raise InvalidMoveTarget(f"Cartão {card_id} não existe")
        return context

    def assign_card(self, card_id, added=(), removed=(), actor_session_id='',
                    actor_user_id=None, operation_id=None) -> Optional[ChangeEntry]:
        """Atribui/remove responsáveis; None se nada mudou"""
        added = self.directory.existing([str(u) for u in added])

        def mutate():
            context = self._card_context(card_id)
            effective_added, effective_removed = self.repository.update_assignees(
                card_id, added, [str(u) for u in removed]
            )
            if not effective_added and not effective_removed:
                return None
            return ChangeEntry(
                board_id=context['board_id'],
                operation=Operation.ASSIGN_CARD,
                affected_entity_id=context['card_id'],
                details=CardAssigned(added=effective_added, removed=effective_removed),
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            )

        return self._commit(lambda: self.store.board_for_card(card_id), mutate)

    def add_comment(self, card_id, text, author_id, mentions=(), actor_session_id='',
                    operation_id=None) -> ChangeEntry:
        author_id = _optional_id(author_id)

        def mutate():
            context = self._card_context(card_id)
            mentioned = resolve_mentions(
                text, mentions, self.directory,
                board_id=context['board_id'],
                card_assignees=context['assignees'],
                author_id=author_id,
            )
            comment_id = self.repository.save_comment(card_id, author_id, text, mentioned)
            return ChangeEntry(
                board_id=context['board_id'],
                operation=Operation.ADD_COMMENT,
                affected_entity_id=context['card_id'],
                details=CommentAdded(
                    comment_id=comment_id,
                    mentioned_user_ids=tuple(mentioned),
                    excerpt=(text or '')[:EXCERPT_LENGTH],
                ),
                actor_session_id=actor_session_id,
                actor_user_id=author_id,
                operation_id=operation_id,
            )

        return self._commit(lambda: self.store.board_for_card(card_id), mutate)

    def set_due_date(self, card_id, due_date, actor_session_id='', actor_user_id=None,
                     operation_id=None) -> Optional[ChangeEntry]:
        """Altera o prazo e avisa os responsáveis; None se o prazo não mudou"""
        due_date = _due_date(due_date)

        def mutate():
            context = self._card_context(card_id)
            previous = self.repository.update_due_date(card_id, due_date)
            if previous == due_date:
                return None
            return ChangeEntry(
                board_id=context['board_id'],
                operation=Operation.SET_DUE_DATE,
                affected_entity_id=context['card_id'],
                details=DueDateChanged(
                    due_date=due_date,
                    previous_due_date=previous,
                    watcher_ids=tuple(context['assignees']),
                ),
                actor_session_id=actor_session_id,
                actor_user_id=_optional_id(actor_user_id),
                operation_id=operation_id,
            )

        return self._commit(lambda: self.store.board_for_card(card_id), mutate)

    # === LEITURA E ASSINATURA ===

    def read_since(self, board_id, sequence_number: int = 0, limit=None) -> List[ChangeEntry]:
        return self.changelog.read_since(str(board_id), sequence_number, limit)

    def board_state(self, board_id) -> Dict:
        """Ordem atual com o número de sequência correspondente"""
        board_id = str(board_id)
        with self.store.serialized(board_id):
            with self.repository.atomic():
                columns = self.repository.describe_board(board_id)
                if columns is None:
                    raise InvalidMoveTarget(f"Board {board_id} não existe")
                return {
                    'boardId': board_id,
                    'sequence': self.changelog.last_sequence(board_id),
                    'columns': columns,
                }

    def subscribe(self, board_id, session_id, deliver, from_sequence: int = 0, user_id=None):
        return self.broadcaster.subscribe(
            board_id, session_id, deliver, from_sequence=from_sequence, user_id=user_id
        )

    def unsubscribe(self, session_id):
        return self.broadcaster.unsubscribe(session_id)

    def reconciler(self, board_id, session_id, user_id=None) -> ClientReconciler:
        """Reconciliador ligado diretamente a este motor (mesmo processo)"""
        return ClientReconciler(
            board_id, session_id, self, user_id=_optional_id(user_id), space=self.store.space
        ).load()

    # === NOTIFICAÇÕES ===

    def add_user_listener(self, user_id, session_id, callback):
        self.broadcaster.add_user_listener(user_id, session_id, callback)

    def remove_user_listener(self, user_id, session_id):
        self.broadcaster.remove_user_listener(user_id, session_id)

    def list_notifications(self, user_id, unread_only=False, page=1, limit=20):
        return self.fanout.list_for(str(user_id), unread_only=unread_only, page=page, limit=limit)

    def unread_count(self, user_id) -> int:
        return self.fanout.unread_count(str(user_id))

    def mark_as_read(self, user_id, notification_id):
        return self.fanout.mark_as_read(str(user_id), notification_id)

    def mark_all_as_read(self, user_id) -> int:
        return self.fanout.mark_all_as_read(str(user_id))

    def delete_notification(self, user_id, notification_id):
        return self.fanout.delete(str(user_id), notification_id)

    def purge_expired_notifications(self, now=None) -> int:
        return self.fanout.purge_expired(now)


def _optional_id(value) -> Optional[str]:
    return None if value is None else str(value)


def build_engine(config: Optional[Dict] = None) -> BoardSyncEngine:
    """Monta o motor a partir de settings.VORTEX_SYNC (ou de `config`)"""
    if config is None:
        config = getattr(settings, 'VORTEX_SYNC', {})
    config = {**DEFAULTS, **config}

    space = PositionSpace(config['POSITION_STEP'], int(config['POSITION_DECIMALS']))

    storage = config['STORAGE']
    if storage == 'orm':
        repository, changelog = OrmRepository(), OrmChangeLog()
        inbox, directory = OrmInbox(), OrmDirectory()
    elif storage == 'memory':
        repository, changelog = MemoryRepository(), ChangeLog()
        inbox, directory = MemoryInbox(), MemoryDirectory()
    else:
        raise ImproperlyConfigured(f"VORTEX_SYNC['STORAGE'] inválido: {storage!r}")

    relay_mode = config['RELAY']
    if relay_mode == 'channels':
        relay = ChannelLayerRelay()
    elif relay_mode == 'local':
        relay = None
    else:
        raise ImproperlyConfigured(f"VORTEX_SYNC['RELAY'] inválido: {relay_mode!r}")

    return BoardSyncEngine(
        repository, changelog, inbox, directory,
        space=space,
        relay=relay,
        retries=int(config['PERSISTENCE_RETRIES']),
        backoff=float(config['PERSISTENCE_BACKOFF']),
        max_backoff=float(config['PERSISTENCE_MAX_BACKOFF']),
        ttl_days=int(config['NOTIFICATION_TTL_DAYS']),
        move_timeout=float(config['MOVE_TIMEOUT']),
    )


def get_engine() -> BoardSyncEngine:
    """Motor do processo, criado em BoardConfig.ready()"""
    from django.apps import apps

    return apps.get_app_config('board').engine
