# apps/board/broadcaster.py

"""
SyncBroadcaster - entrega das entradas do ChangeLog às sessões vivas

Transporte at-least-once, aplicação effectively-once: cada Subscription
guarda o último número de sequência entregue e descarta repetidos.
Na inscrição, o histórico é reproduzido antes de a sessão passar a
receber ao vivo; o que chega durante o replay fica em buffer.
"""

import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional

from asgiref.sync import async_to_sync

from .events import ChangeEntry

logger = logging.getLogger(__name__)

Deliver = Callable[[ChangeEntry], None]

DELIVERED = 'delivered'
DUPLICATE = 'duplicate'
BUFFERED = 'buffered'
GAP = 'gap'


class Subscription:
    """Ligação efêmera de uma sessão ao fluxo de mudanças de um board"""

    def __init__(self, board_id, session_id, deliver: Deliver, catch_up=None,
                 last_sequence: int = 0, user_id=None):
        self.board_id = str(board_id)
        self.session_id = session_id
        self.user_id = user_id
        self.deliver = deliver
        self.last_sequence = last_sequence
        self.replaying = True
        self._catch_up = catch_up
        self._buffer: List[ChangeEntry] = []
        self._lock = threading.RLock()

    def __repr__(self):
        return f"<Subscription {self.session_id} board={self.board_id} seq={self.last_sequence}>"

    def _push(self, entry: ChangeEntry):
        self.deliver(entry)
        self.last_sequence = entry.sequence_number

    def _deliver(self, entry: ChangeEntry) -> str:
        sequence = entry.sequence_number
        if sequence <= self.last_sequence:
            return DUPLICATE

        if sequence > self.last_sequence + 1 and self._catch_up is not None:
            logger.warning(
                f"⚠️ Lacuna na sessão {self.session_id}: {self.last_sequence} -> {sequence}"
            )
            for missed in self._catch_up(self.last_sequence):
                if missed.sequence_number >= sequence:
                    break
                if missed.sequence_number == self.last_sequence + 1:
                    self._push(missed)

        if sequence != self.last_sequence + 1:
            return GAP

        self._push(entry)
        return DELIVERED

    def offer(self, entry: ChangeEntry) -> str:
        with self._lock:
            if self.replaying:
                self._buffer.append(entry)
                return BUFFERED
            return self._deliver(entry)

    def replay(self, entries):
        with self._lock:
            for entry in entries:
                self._deliver(entry)

    def go_live(self):
        """Esvazia o buffer em ordem de sequência e passa a entregar ao vivo"""
        with self._lock:
            pending = sorted(self._buffer, key=lambda e: e.sequence_number)
            self._buffer = []
            for entry in pending:
                self._deliver(entry)
            self.replaying = False


class SubscriptionRegistry:
    """
    Registro de inscrições e de listeners de notificação por usuário

    Componente explícito com ciclo de vida: start() no início do
    processo, shutdown() no encerramento.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._boards: Dict[str, Dict[str, Subscription]] = {}
        self._sessions: Dict[str, Subscription] = {}
        self._users: Dict[str, Dict[str, Deliver]] = {}
        self.running = False

    def start(self):
        with self._lock:
            self.running = True
        logger.info("✅ Registro de inscrições iniciado")

    def shutdown(self):
        with self._lock:
            total = len(self._sessions)
            self._boards.clear()
            self._sessions.clear()
            self._users.clear()
            self.running = False
        logger.info(f"🛑 Registro de inscrições encerrado ({total} sessões)")

    def _require_running(self):
        if not self.running:
            raise RuntimeError("Registro de inscrições não iniciado")

    def add(self, subscription: Subscription):
        with self._lock:
            self._require_running()
            self.remove(subscription.session_id)
            self._sessions[subscription.session_id] = subscription
            self._boards.setdefault(subscription.board_id, {})[subscription.session_id] = subscription

    def remove(self, session_id) -> Optional[Subscription]:
        with self._lock:
            subscription = self._sessions.pop(session_id, None)
            if subscription is not None:
                board = self._boards.get(subscription.board_id, {})
                board.pop(session_id, None)
                if not board:
                    self._boards.pop(subscription.board_id, None)
            return subscription

    def get(self, session_id) -> Optional[Subscription]:
        with self._lock:
            return self._sessions.get(session_id)

    def for_board(self, board_id) -> List[Subscription]:
        with self._lock:
            return list(self._boards.get(str(board_id), {}).values())

    def add_user_listener(self, user_id, session_id, callback: Deliver):
        with self._lock:
            self._require_running()
            self._users.setdefault(str(user_id), {})[session_id] = callback

    def remove_user_listener(self, user_id, session_id):
        with self._lock:
            listeners = self._users.get(str(user_id), {})
            listeners.pop(session_id, None)
            if not listeners:
                self._users.pop(str(user_id), None)

    def user_listeners(self, user_id) -> Dict[str, Deliver]:
        with self._lock:
            return dict(self._users.get(str(user_id), {}))

    def session_count(self, board_id=None) -> int:
        with self._lock:
            if board_id is None:
                return len(self._sessions)
            return len(self._boards.get(str(board_id), {}))


class ChannelLayerRelay:
    """
    Repasse entre processos pelo channel layer do Django Channels

    Grupos `board_<id>` recebem mensagens `change_entry`; grupos
    `user_<id>` recebem `notification_message`. A origem vai junto para
    que o processo emissor ignore o próprio eco.
    """

    def __init__(self, channel_layer=None):
        if channel_layer is None:
            from channels.layers import get_channel_layer
            channel_layer = get_channel_layer()
        self.channel_layer = channel_layer

    @staticmethod
    def board_group(board_id) -> str:
        return f"board_{board_id}"

    @staticmethod
    def user_group(user_id) -> str:
        return f"user_{user_id}"

    def forward(self, entry: ChangeEntry, origin: str):
        async_to_sync(self.channel_layer.group_send)(
            self.board_group(entry.board_id),
            {'type': 'change_entry', 'origin': origin, 'payload': entry.to_payload()},
        )

    def forward_user(self, user_id, payload: Dict, origin: str):
        async_to_sync(self.channel_layer.group_send)(
            self.user_group(user_id),
            {'type': 'notification_message', 'origin': origin, 'payload': payload},
        )


class SyncBroadcaster:
    """Entrega as entradas do ChangeLog a todas as inscrições do board"""

    def __init__(self, changelog, registry: Optional[SubscriptionRegistry] = None, relay=None):
        self.changelog = changelog
        self.registry = registry or SubscriptionRegistry()
        self.relay = relay
        self.instance_id = uuid.uuid4().hex

    def start(self):
        self.registry.start()

    def shutdown(self):
        self.registry.shutdown()

    def subscribe(self, board_id, session_id, deliver: Deliver, from_sequence: int = 0,
                  user_id=None) -> Subscription:
        """
        Registra a sessão, reproduz read_since(board_id, from_sequence) e
        então libera o que chegou ao vivo durante o replay, sem lacunas
        nem reordenação.
        """
        board_id = str(board_id)
        subscription = Subscription(
            board_id, session_id, deliver,
            catch_up=lambda sequence: self.changelog.read_since(board_id, sequence),
            last_sequence=from_sequence,
            user_id=user_id,
        )
        self.registry.add(subscription)
        try:
            subscription.replay(self.changelog.read_since(board_id, from_sequence))
            subscription.go_live()
        except Exception:
            self.registry.remove(session_id)
            raise

        logger.info(
            f"📡 Sessão {session_id} inscrita no board {board_id} "
            f"(seq {from_sequence} -> {subscription.last_sequence})"
        )
        return subscription

    def unsubscribe(self, session_id):
        subscription = self.registry.remove(session_id)
        if subscription is not None:
            logger.info(f"👋 Sessão {session_id} saiu do board {subscription.board_id}")
        return subscription

    def _offer(self, subscription: Subscription, entry: ChangeEntry):
        try:
            return subscription.offer(entry)
        except Exception as e:
            logger.warning(f"⚠️ Removendo sessão {subscription.session_id} após falha: {e}")
            self.registry.remove(subscription.session_id)
            return None

    def publish(self, entry: ChangeEntry):
        """Listener do ChangeLog: entrega local e repasse ao relay"""
        for subscription in self.registry.for_board(entry.board_id):
            self._offer(subscription, entry)

        if self.relay is not None:
            try:
                self.relay.forward(entry, self.instance_id)
            except Exception as e:
                logger.error(f"❌ Falha no relay de {entry.entry_id}: {e}")

    def receive(self, session_id, payload: Dict) -> Optional[str]:
        """Entrada vinda do relay para uma sessão deste processo"""
        subscription = self.registry.get(session_id)
        if subscription is None:
            return None
        return self._offer(subscription, ChangeEntry.from_payload(payload))

    # === CANAL POR USUÁRIO ===

    def add_user_listener(self, user_id, session_id, callback: Deliver):
        self.registry.add_user_listener(user_id, session_id, callback)

    def remove_user_listener(self, user_id, session_id):
        self.registry.remove_user_listener(user_id, session_id)

    def deliver_to_user(self, user_id, payload: Dict) -> bool:
        """Entrega somente às sessões deste processo"""
        delivered = False
        for session_id, callback in self.registry.user_listeners(user_id).items():
            try:
                callback(payload)
                delivered = True
            except Exception as e:
                logger.warning(f"⚠️ Removendo listener {session_id} do usuário {user_id}: {e}")
                self.registry.remove_user_listener(user_id, session_id)
        return delivered

    def notify_user(self, user_id, payload: Dict) -> bool:
        """True se alguma sessão deste processo recebeu a notificação"""
        delivered = self.deliver_to_user(user_id, payload)

        if self.relay is not None:
            try:
                self.relay.forward_user(user_id, payload, self.instance_id)
            except Exception as e:
                logger.error(f"❌ Falha no relay da notificação para {user_id}: {e}")

        return delivered
