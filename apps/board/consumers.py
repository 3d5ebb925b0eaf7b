# apps/board/consumers.py

import asyncio
import json
import logging
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer

from apps.core.models import Board, Coluna
from apps.core.permissions import VortexPermissions

from .broadcaster import ChannelLayerRelay
from .exceptions import InvalidMoveTarget, NotificationNotFound, OrderingConflict, SyncError
from .services import get_engine

logger = logging.getLogger(__name__)


def move_status(error) -> str:
    """Status do move_result para cada tipo de falha"""
    if isinstance(error, OrderingConflict):
        return 'conflict'
    if isinstance(error, InvalidMoveTarget):
        return 'invalid'
    if isinstance(error, asyncio.TimeoutError):
        return 'timeout'
    if isinstance(error, SyncError) and error.retryable:
        return 'unavailable'
    return 'error'


class OutboxMixin:
    """
    Fila de saída do consumer

    O motor entrega entradas a partir de threads de trabalho; a fila
    leva as mensagens de volta ao event loop na ordem de chegada.
    """

    def start_outbox(self):
        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self._sender = asyncio.ensure_future(self._drain_outbox())

    def enqueue(self, message):
        """Pode ser chamado de qualquer thread"""
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)

    async def _drain_outbox(self):
        while True:
            message = await self._outbox.get()
            await self.send(text_data=json.dumps(message))

    async def stop_outbox(self):
        sender = getattr(self, '_sender', None)
        if sender is not None:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass


class BoardConsumer(OutboxMixin, AsyncWebsocketConsumer):
    """
    Consumer WebSocket para atualizações em tempo real do board Kanban

    Funcionalidades:
    - Replay do registro de mudanças a partir de ?since=N
    - Entrega ao vivo das mudanças aceitas
    - Movimentação de cartões e colunas com resultado explícito
    - Sincronização completa do estado sob demanda
    """

    async def connect(self):
        """
        Conecta usuário ao fluxo de mudanças do board
        Verifica permissões antes de aceitar conexão
        """
        self.board_id = str(self.scope['url_route']['kwargs']['board_id'])
        self.board_group_name = ChannelLayerRelay.board_group(self.board_id)
        self.user = self.scope['user']
        self.subscribed = False

        # Verificar se usuário está autenticado
        if not self.user.is_authenticated:
            logger.warning("❌ Conexão WebSocket rejeitada - usuário não autenticado")
            await self.close()
            return

        # Verificar permissão de acesso ao board
        access = await self.check_board_access()
        if access is None:
            logger.warning(f"❌ Conexão WebSocket rejeitada - {self.user.username} sem acesso ao board {self.board_id}")
            await self.close()
            return
        self.can_manage_columns = access

        self.engine = get_engine()
        self.session_id = self.channel_name

        await self.channel_layer.group_add(self.board_group_name, self.channel_name)
        await self.accept()
        self.start_outbox()

        since = self.get_since()
        await database_sync_to_async(self.engine.subscribe)(
            self.board_id, self.session_id, self.deliver_entry,
            from_sequence=since, user_id=str(self.user.id),
        )
        self.subscribed = True

        logger.info(f"✅ WebSocket conectado - {self.user.username} no board {self.board_id} (desde {since})")

    async def disconnect(self, close_code):
        """
        Cancela a inscrição e sai do grupo
        """
        if getattr(self, 'subscribed', False):
            self.engine.unsubscribe(self.session_id)
            self.subscribed = False

        if hasattr(self, 'session_id'):
            await self.channel_layer.group_discard(self.board_group_name, self.channel_name)

        await self.stop_outbox()
        logger.info(f"🔌 WebSocket desconectado - {self.user.username} do board {self.board_id}")

    def get_since(self):
        query = parse_qs(self.scope.get('query_string', b'').decode())
        try:
            return max(int(query.get('since', ['0'])[0]), 0)
        except ValueError:
            return 0

    def deliver_entry(self, entry):
        """Callback da Subscription (roda em thread de trabalho)"""
        self.enqueue({'type': 'change', 'entry': entry.to_payload()})

    async def receive(self, text_data):
        """
        Recebe mensagens do cliente WebSocket
        Processa diferentes tipos de eventos
        """
        try:
            data = json.loads(text_data)
        except json.JSONDecodeError:
            logger.error(f"❌ JSON inválido recebido via WebSocket de {self.user.username}")
            return

        message_type = data.get('type')

        # Heartbeat/Ping
        if message_type == 'ping':
            await self.send(text_data=json.dumps({
                'type': 'pong',
                'timestamp': self.get_timestamp()
            }))

        # Sincronização de estado do board
        elif message_type == 'sync_board':
            state = await database_sync_to_async(self.engine.board_state)(self.board_id)
            await self.send(text_data=json.dumps({
                'type': 'board_sync',
                'board': state,
                'timestamp': self.get_timestamp()
            }))

        elif message_type == 'move_card':
            problem = await self.check_move_target(data.get('card_id'), data.get('column_id'))
            if problem is not None:
                logger.info(f"🔄 Movimento recusado para {self.user.username}: {problem}")
                await self.send_move_result(data, 'invalid', message=problem)
                return
            await self.run_move(
                data,
                self.engine.move_card,
                data.get('card_id'), data.get('column_id'), data.get('after_card_id'),
            )

        elif message_type == 'move_column':
            if not self.can_manage_columns:
                await self.send_move_result(data, 'forbidden', message='Apenas gerentes e administradores')
                return
            await self.run_move(
                data,
                self.engine.move_column,
                data.get('column_id'), self.board_id, data.get('after_column_id'),
            )

        else:
            logger.warning(f"⚠️ Tipo de mensagem desconhecido: {message_type}")

    async def run_move(self, data, operation, *args):
        """Executa o movimento com timeout e responde com move_result"""
        try:
            entry = await asyncio.wait_for(
                database_sync_to_async(operation)(
                    *args,
                    expected_version=data.get('expected'),
                    actor_session_id=self.session_id,
                    actor_user_id=str(self.user.id),
                    operation_id=data.get('operation_id'),
                ),
                timeout=self.engine.move_timeout,
            )
        except (SyncError, asyncio.TimeoutError) as e:
            logger.info(f"🔄 Movimento rejeitado para {self.user.username}: {e!r}")
            await self.send_move_result(data, move_status(e), message=str(e))
            return

        await self.send_move_result(data, 'ok', sequence_number=entry.sequence_number)

    async def send_move_result(self, data, status, sequence_number=None, message=None):
        await self.send(text_data=json.dumps({
            'type': 'move_result',
            'operationId': data.get('operation_id'),
            'status': status,
            'sequenceNumber': sequence_number,
            'message': message,
        }))

    # === Handlers do channel layer ===

    async def change_entry(self, event):
        """
        Entrada repassada por outro processo
        O eco do próprio processo é ignorado (já foi entregue localmente)
        """
        if event.get('origin') == self.engine.broadcaster.instance_id:
            return
        await database_sync_to_async(self.engine.broadcaster.receive)(self.session_id, event['payload'])

    # === Métodos auxiliares ===

    @database_sync_to_async
    def check_board_access(self):
        """
        Verifica se usuário tem acesso ao board
        None = sem acesso; senão, se pode gerenciar colunas
        """
        try:
            board = Board.objects.select_related('projeto').get(id=self.board_id, ativo=True)
        except Board.DoesNotExist:
            return None
        if not VortexPermissions.tem_acesso_board(self.user, board):
            return None
        return VortexPermissions.pode_gerenciar_colunas(self.user, board)

    @database_sync_to_async
    def check_move_target(self, card_id, column_id):
        """
        Mesmas verificações da view mover_cartao
        None = pode mover; senão, o motivo da recusa
        """
        if not card_id or not column_id:
            return 'card_id e column_id são obrigatórios'
        try:
            coluna = Coluna.objects.get(pk=column_id, board_id=self.board_id)
        except (Coluna.DoesNotExist, ValueError):
            return f'Coluna {column_id} não pertence ao board {self.board_id}'

        try:
            ja_na_coluna = coluna.cartoes.filter(pk=card_id, arquivado=False).exists()
        except ValueError:
            return f'Cartão {card_id} não existe'

        # Verificar limite WIP quando o cartão muda de coluna
        if not ja_na_coluna and not coluna.pode_adicionar_item():
            return f'Coluna {coluna.titulo} atingiu limite WIP ({coluna.limite_wip})'
        return None

    def get_timestamp(self):
        """
        Retorna timestamp atual em formato ISO
        """
        from django.utils import timezone
        return timezone.now().isoformat()


class NotificationConsumer(OutboxMixin, AsyncWebsocketConsumer):
    """
    Consumer para notificações do usuário
    (separado do board para permitir notificações globais)
    """

    async def connect(self):
        """
        Conecta usuário ao seu canal pessoal de notificações
        """
        self.user = self.scope['user']

        if not self.user.is_authenticated:
            await self.close()
            return

        self.engine = get_engine()
        self.user_id = str(self.user.id)
        self.user_group_name = ChannelLayerRelay.user_group(self.user_id)

        await self.channel_layer.group_add(self.user_group_name, self.channel_name)
        await self.accept()
        self.start_outbox()

        self.engine.add_user_listener(self.user_id, self.channel_name, self.deliver_notification)

        count = await database_sync_to_async(self.engine.unread_count)(self.user_id)
        await self.send(text_data=json.dumps({'type': 'unread_count', 'count': count}))

        logger.info(f"🔔 Notificações conectadas para {self.user.username}")

    async def disconnect(self, close_code):
        """
        Desconecta das notificações
        """
        if hasattr(self, 'user_group_name'):
            self.engine.remove_user_listener(self.user_id, self.channel_name)
            await self.channel_layer.group_discard(self.user_group_name, self.channel_name)

        await self.stop_outbox()
        logger.info(f"🔕 Notificações desconectadas para {self.user.username}")

    def deliver_notification(self, payload):
        """Listener do canal por usuário (roda em thread de trabalho)"""
        self.enqueue({'type': 'notification', 'notification': payload})

    async def receive(self, text_data):
        """
        Processa comandos de notificação
        """
        try:
            data = json.loads(text_data)
        except json.JSONDecodeError:
            logger.error(f"❌ JSON inválido no NotificationConsumer de {self.user.username}")
            return

        # Marcar notificação como lida
        if data.get('type') == 'mark_read':
            notification_id = data.get('notification_id')
            try:
                notification = await database_sync_to_async(self.engine.mark_as_read)(
                    self.user_id, notification_id
                )
            except NotificationNotFound as e:
                await self.send(text_data=json.dumps({'type': 'error', 'message': str(e)}))
                return
            await self.send(text_data=json.dumps({
                'type': 'notification_read',
                'notification': notification.to_payload(),
            }))

        elif data.get('type') == 'mark_all_read':
            updated = await database_sync_to_async(self.engine.mark_all_as_read)(self.user_id)
            await self.send(text_data=json.dumps({'type': 'all_read', 'updated': updated}))

    async def notification_message(self, event):
        """
        Notificação repassada por outro processo
        """
        if event.get('origin') == self.engine.broadcaster.instance_id:
            return
        await self.send(text_data=json.dumps({
            'type': 'notification',
            'notification': event['payload']
        }))
