# apps/board/notifications.py

"""
NotificationFanout - notificações derivadas das mudanças aceitas

Cada notificação é única por (entrada de origem, destinatário, tipo).
Reprocessar a mesma ChangeEntry (ex.: após reinício) não cria uma
segunda notificação: a caixa de entrada levanta
DuplicateNotificationSuppressed e o fanout só registra em log.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from django.db import IntegrityError, transaction

from .events import ChangeEntry, Operation, utcnow
from .exceptions import DuplicateNotificationSuppressed, NotificationNotFound

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 30
DEFAULT_PAGE_SIZE = 20


class NotificationKind(Enum):
    CARD_ASSIGNED = 'card_assigned'
    CARD_UNASSIGNED = 'card_unassigned'
    COMMENT_MENTION = 'comment_mention'
    DUE_DATE_CHANGED = 'due_date_changed'


@dataclass(frozen=True)
class Notification:
    id: str
    recipient_user_id: str
    source_change_entry_id: str
    kind: NotificationKind
    created_at: datetime
    read: bool = False
    board_id: Optional[str] = None
    card_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    read_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.source_change_entry_id, self.recipient_user_id, self.kind.value)

    def to_payload(self) -> Dict:
        return {
            'id': self.id,
            'recipientUserId': self.recipient_user_id,
            'sourceChangeEntryId': self.source_change_entry_id,
            'kind': self.kind.value,
            'read': self.read,
            'createdAt': self.created_at.isoformat(),
            'boardId': self.board_id,
            'cardId': self.card_id,
            'actorUserId': self.actor_user_id,
        }


# =============================================================================
# DERIVAÇÃO
# =============================================================================

def _assignment(entry):
    details = entry.details
    return (
        [(user_id, NotificationKind.CARD_ASSIGNED) for user_id in details.added]
        + [(user_id, NotificationKind.CARD_UNASSIGNED) for user_id in details.removed]
    )


def _mention(entry):
    return [(user_id, NotificationKind.COMMENT_MENTION) for user_id in entry.details.mentioned_user_ids]


def _due_date(entry):
    return [(user_id, NotificationKind.DUE_DATE_CHANGED) for user_id in entry.details.watcher_ids]


def _nothing(entry):
    return []


_DERIVERS = {
    Operation.ASSIGN_CARD: _assignment,
    Operation.ADD_COMMENT: _mention,
    Operation.SET_DUE_DATE: _due_date,
    Operation.MOVE_CARD: _nothing,
    Operation.MOVE_COLUMN: _nothing,
    Operation.CREATE_CARD: _nothing,
    Operation.DELETE_CARD: _nothing,
    Operation.CREATE_COLUMN: _nothing,
    Operation.DELETE_COLUMN: _nothing,
    Operation.REBALANCE_COLUMN: _nothing,
    Operation.REBALANCE_BOARD: _nothing,
}

assert set(_DERIVERS) == set(Operation)


def derive_notifications(entry: ChangeEntry) -> List[Tuple[str, NotificationKind]]:
    """Pares (destinatário, tipo) de uma entrada; o autor nunca se notifica"""
    result = []
    for user_id, kind in _DERIVERS[entry.operation](entry):
        pair = (str(user_id), kind)
        if pair[0] != entry.actor_user_id and pair not in result:
            result.append(pair)
    return result


def _card_of(entry: ChangeEntry) -> Optional[str]:
    if entry.operation in (Operation.ASSIGN_CARD, Operation.ADD_COMMENT, Operation.SET_DUE_DATE):
        return entry.affected_entity_id
    return None


# =============================================================================
# CAIXAS DE ENTRADA
# =============================================================================

class NotificationInbox(ABC):
    """Dona exclusiva da coleção de notificações"""

    @abstractmethod
    def create(self, recipient_user_id, source_change_entry_id, kind: NotificationKind,
               board_id=None, card_id=None, actor_user_id=None,
               expires_at=None) -> Notification:
        """Levanta DuplicateNotificationSuppressed se a chave já existe"""

    @abstractmethod
    def get(self, user_id, notification_id) -> Notification:
        pass

    @abstractmethod
    def mark_as_read(self, user_id, notification_id) -> Notification:
        pass

    @abstractmethod
    def mark_all_as_read(self, user_id) -> int:
        pass

    @abstractmethod
    def list_for(self, user_id, unread_only=False, page=1,
                 limit=DEFAULT_PAGE_SIZE) -> Tuple[List[Notification], int]:
        """Página de notificações por created_at decrescente, e o total"""

    @abstractmethod
    def unread_count(self, user_id) -> int:
        pass

    @abstractmethod
    def delete(self, user_id, notification_id):
        pass

    @abstractmethod
    def purge_expired(self, now=None) -> int:
        pass


def _page_bounds(page, limit):
    page = max(int(page), 1)
    limit = max(int(limit), 1)
    start = (page - 1) * limit
    return start, start + limit


class MemoryInbox(NotificationInbox):

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._items: Dict[str, Notification] = {}
        self._keys = set()

    def create(self, recipient_user_id, source_change_entry_id, kind,
               board_id=None, card_id=None, actor_user_id=None, expires_at=None):
        key = (source_change_entry_id, str(recipient_user_id), kind.value)
        with self._lock:
            if key in self._keys:
                raise DuplicateNotificationSuppressed(key)
            now = utcnow()
            notification = Notification(
                id=str(next(self._ids)),
                recipient_user_id=str(recipient_user_id),
                source_change_entry_id=source_change_entry_id,
                kind=kind,
                created_at=now,
                board_id=board_id,
                card_id=card_id,
                actor_user_id=actor_user_id,
                expires_at=expires_at or now + timedelta(days=DEFAULT_TTL_DAYS),
            )
            self._items[notification.id] = notification
            self._keys.add(key)
            return notification

    def _owned(self, user_id, notification_id) -> Notification:
        notification = self._items.get(str(notification_id))
        if notification is None or notification.recipient_user_id != str(user_id):
            raise NotificationNotFound(f"Notificação {notification_id} não encontrada")
        return notification

    def get(self, user_id, notification_id):
        with self._lock:
            return self._owned(user_id, notification_id)

    def mark_as_read(self, user_id, notification_id):
        with self._lock:
            notification = self._owned(user_id, notification_id)
            if not notification.read:
                notification = replace(notification, read=True, read_at=utcnow())
                self._items[notification.id] = notification
            return notification

    def mark_all_as_read(self, user_id):
        with self._lock:
            now = utcnow()
            unread = [
                n for n in self._items.values()
                if n.recipient_user_id == str(user_id) and not n.read
            ]
            for notification in unread:
                self._items[notification.id] = replace(notification, read=True, read_at=now)
            return len(unread)

    def list_for(self, user_id, unread_only=False, page=1, limit=DEFAULT_PAGE_SIZE):
        with self._lock:
            items = [
                n for n in self._items.values()
                if n.recipient_user_id == str(user_id) and not (unread_only and n.read)
            ]
        items.sort(key=lambda n: (n.created_at, int(n.id)), reverse=True)
        start, end = _page_bounds(page, limit)
        return items[start:end], len(items)

    def unread_count(self, user_id):
        with self._lock:
            return sum(
                1 for n in self._items.values()
                if n.recipient_user_id == str(user_id) and not n.read
            )

    def delete(self, user_id, notification_id):
        with self._lock:
            notification = self._owned(user_id, notification_id)
            del self._items[notification.id]
            # a chave continua registrada: reprocessar a entrada não recria a notificação
            return notification

    def purge_expired(self, now=None):
        now = now or utcnow()
        with self._lock:
            expired = [n.id for n in self._items.values() if n.expires_at and n.expires_at <= now]
            for notification_id in expired:
                del self._items[notification_id]
            return len(expired)


class OrmInbox(NotificationInbox):
    """Caixa de entrada sobre Notificacao; a UniqueConstraint garante a deduplicação"""

    @staticmethod
    def _to_notification(obj) -> Notification:
        return Notification(
            id=str(obj.pk),
            recipient_user_id=str(obj.destinatario_id),
            source_change_entry_id=obj.origem,
            kind=NotificationKind(obj.tipo),
            created_at=obj.criado_em,
            read=obj.lida,
            board_id=obj.board_id_ref or None,
            card_id=obj.cartao_id_ref or None,
            actor_user_id=obj.ator_id_ref or None,
            read_at=obj.lida_em,
            expires_at=obj.expira_em,
        )

    def create(self, recipient_user_id, source_change_entry_id, kind,
               board_id=None, card_id=None, actor_user_id=None, expires_at=None):
        from apps.core.models import Notificacao

        key = (source_change_entry_id, str(recipient_user_id), kind.value)
        fields = dict(
            destinatario_id=int(recipient_user_id),
            origem=source_change_entry_id,
            tipo=kind.value,
            board_id_ref=board_id or '',
            cartao_id_ref=card_id or '',
            ator_id_ref=actor_user_id or '',
        )
        if expires_at is not None:
            fields['expira_em'] = expires_at
        try:
            with transaction.atomic():
                obj = Notificacao.objects.create(**fields)
        except IntegrityError:
            raise DuplicateNotificationSuppressed(key)
        return self._to_notification(obj)

    def _owned(self, user_id, notification_id):
        from apps.core.models import Notificacao

        try:
            return Notificacao.objects.get(pk=int(notification_id), destinatario_id=int(user_id))
        except (Notificacao.DoesNotExist, TypeError, ValueError):
            raise NotificationNotFound(f"Notificação {notification_id} não encontrada")

    def get(self, user_id, notification_id):
        return self._to_notification(self._owned(user_id, notification_id))

    def mark_as_read(self, user_id, notification_id):
        from django.utils import timezone

        obj = self._owned(user_id, notification_id)
        if not obj.lida:
            obj.lida = True
            obj.lida_em = timezone.now()
            obj.save(update_fields=['lida', 'lida_em'])
        return self._to_notification(obj)

    def mark_all_as_read(self, user_id):
        from apps.core.models import Notificacao
        from django.utils import timezone

        return Notificacao.objects.filter(destinatario_id=int(user_id), lida=False).update(
            lida=True, lida_em=timezone.now()
        )

    def list_for(self, user_id, unread_only=False, page=1, limit=DEFAULT_PAGE_SIZE):
        from apps.core.models import Notificacao

        queryset = Notificacao.objects.filter(destinatario_id=int(user_id))
        if unread_only:
            queryset = queryset.filter(lida=False)
        start, end = _page_bounds(page, limit)
        total = queryset.count()
        items = queryset.order_by('-criado_em', '-id')[start:end]
        return [self._to_notification(obj) for obj in items], total

    def unread_count(self, user_id):
        from apps.core.models import Notificacao

        return Notificacao.objects.filter(destinatario_id=int(user_id), lida=False).count()

    def delete(self, user_id, notification_id):
        obj = self._owned(user_id, notification_id)
        notification = self._to_notification(obj)
        obj.delete()
        return notification

    def purge_expired(self, now=None):
        from apps.core.models import Notificacao
        from django.utils import timezone

        deleted, _ = Notificacao.objects.filter(expira_em__lte=now or timezone.now()).delete()
        return deleted


# =============================================================================
# FANOUT
# =============================================================================

class NotificationFanout:
    """Listener do ChangeLog: cria e entrega as notificações de cada entrada"""

    def __init__(self, inbox: NotificationInbox,
                 push: Optional[Callable[[str, Dict], bool]] = None,
                 ttl_days: int = DEFAULT_TTL_DAYS):
        self.inbox = inbox
        self.push = push
        self.ttl = timedelta(days=ttl_days)

    def process(self, entry: ChangeEntry) -> List[Notification]:
        created = []
        for recipient, kind in derive_notifications(entry):
            try:
                notification = self.inbox.create(
                    recipient, entry.entry_id, kind,
                    board_id=entry.board_id,
                    card_id=_card_of(entry),
                    actor_user_id=entry.actor_user_id,
                    expires_at=utcnow() + self.ttl,
                )
            except DuplicateNotificationSuppressed as e:
                logger.info(f"🔕 {e}")
                continue

            created.append(notification)
            self._deliver(notification)

        if created:
            logger.info(f"🔔 {len(created)} notificações criadas a partir de {entry.entry_id}")
        return created

    __call__ = process

    def _deliver(self, notification: Notification):
        if self.push is None:
            return
        try:
            online = self.push(notification.recipient_user_id, notification.to_payload())
        except Exception as e:
            logger.warning(f"⚠️ Falha ao entregar notificação {notification.id}: {e}")
            return
        if not online:
            logger.debug(f"Usuário {notification.recipient_user_id} offline, notificação fica na caixa")

    # === OPERAÇÕES DO USUÁRIO ===

    def mark_as_read(self, user_id, notification_id) -> Notification:
        return self.inbox.mark_as_read(user_id, notification_id)

    def mark_all_as_read(self, user_id) -> int:
        return self.inbox.mark_all_as_read(user_id)

    def list_for(self, user_id, unread_only=False, page=1, limit=DEFAULT_PAGE_SIZE):
        return self.inbox.list_for(user_id, unread_only=unread_only, page=page, limit=limit)

    def unread_count(self, user_id) -> int:
        return self.inbox.unread_count(user_id)

    def delete(self, user_id, notification_id) -> Notification:
        return self.inbox.delete(user_id, notification_id)

    def purge_expired(self, now=None) -> int:
        deleted = self.inbox.purge_expired(now)
        if deleted:
            logger.info(f"🧹 {deleted} notificações expiradas removidas")
        return deleted
