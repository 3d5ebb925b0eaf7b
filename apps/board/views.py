# apps/board/views.py

import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from apps.core.models import Coluna
from apps.core.permissions import (
    VortexPermissions,
    api_login_requerido,
    api_requer_acesso_board,
    api_requer_acesso_cartao,
)

from .exceptions import (
    ChangeLogAppendError,
    InvalidMoveTarget,
    NotificationNotFound,
    OrderingConflict,
    PersistenceUnavailable,
)
from .ordering import LAST
from .positions import Neighborhood
from .services import get_engine

logger = logging.getLogger(__name__)


def _neighborhood(value):
    return value.to_dict() if isinstance(value, Neighborhood) else value


def traduzir_erros(view_func):
    """
    Converte os erros do motor em respostas JSON
    409 conflito, 400 destino inválido, 503 persistência indisponível
    """

    @wraps(view_func)
    def wrapped_view(request, *args, **kwargs):
        try:
            return view_func(request, *args, **kwargs)
        except OrderingConflict as e:
            return JsonResponse({
                'success': False,
                'error': str(e),
                'conflict': True,
                'expected': _neighborhood(e.expected),
                'actual': _neighborhood(e.actual),
            }, status=409)
        except InvalidMoveTarget as e:
            return JsonResponse({'success': False, 'error': str(e)}, status=400)
        except (PersistenceUnavailable, ChangeLogAppendError) as e:
            logger.error(f"❌ Mutação não efetivada: {e}")
            return JsonResponse({'success': False, 'error': 'Serviço temporariamente indisponível'}, status=503)
        except NotificationNotFound as e:
            return JsonResponse({'success': False, 'error': str(e)}, status=404)
        except ValueError as e:
            return JsonResponse({'success': False, 'error': f'Parâmetros inválidos: {e}'}, status=400)

    return wrapped_view


def _json_body(request):
    try:
        data = json.loads(request.body or b'{}')
    except json.JSONDecodeError:
        raise ValueError('JSON inválido')
    if not isinstance(data, dict):
        raise ValueError('JSON deve ser um objeto')
    return data


def _entry_response(entry, status=200):
    return JsonResponse({
        'success': True,
        'entry': entry.to_payload() if entry is not None else None,
    }, status=status)


def _coluna_do_board(board, column_id):
    if not Coluna.objects.filter(pk=column_id, board=board).exists():
        raise InvalidMoveTarget(f'Coluna {column_id} não pertence ao board {board.pk}')


# =============================================================================
# ESTADO E REPLAY
# =============================================================================

@require_GET
@api_requer_acesso_board
@traduzir_erros
def board_estado(request, board_id):
    """Ordem atual do board com o número de sequência correspondente"""
    return JsonResponse({'success': True, 'board': get_engine().board_state(board_id)})


@require_GET
@api_requer_acesso_board
@traduzir_erros
def board_mudancas(request, board_id):
    """
    Entradas do registro de mudanças após ?since=N
    Usado para alcançar o estado depois de uma desconexão
    """
    since = int(request.GET.get('since', 0))
    limit = request.GET.get('limit')
    entries = get_engine().read_since(board_id, since, int(limit) if limit else None)
    return JsonResponse({
        'success': True,
        'entries': [entry.to_payload() for entry in entries],
        'lastSequence': entries[-1].sequence_number if entries else since,
    })


# =============================================================================
# ORDENAÇÃO
# =============================================================================

@require_POST
@csrf_exempt  # Para requisições AJAX do drag-and-drop
@api_requer_acesso_board
@traduzir_erros
def mover_cartao(request, board_id):
    """
    Move cartão para logo após after_card_id (null = topo da coluna)
    Usado pelo drag-and-drop
    """
    data = _json_body(request)
    card_id = data.get('card_id')
    column_id = data.get('column_id')

    if not all([card_id, column_id]):
        raise ValueError('card_id e column_id são obrigatórios')

    _coluna_do_board(request.board, column_id)

    # Verificar limite WIP quando o cartão muda de coluna
    coluna = Coluna.objects.get(pk=column_id)
    if not coluna.cartoes.filter(pk=card_id, arquivado=False).exists() and not coluna.pode_adicionar_item():
        raise InvalidMoveTarget(f'Coluna {coluna.titulo} atingiu limite WIP ({coluna.limite_wip})')

    entry = get_engine().move_card(
        card_id, column_id, data.get('after_card_id'),
        expected_version=data.get('expected'),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


@require_POST
@csrf_exempt
@api_requer_acesso_board
@traduzir_erros
def mover_coluna(request, board_id):
    """Reordena colunas do board (gerente ou admin)"""
    if not VortexPermissions.pode_gerenciar_colunas(request.user, request.board):
        return JsonResponse({'success': False, 'error': 'Apenas gerentes e administradores'}, status=403)

    data = _json_body(request)
    column_id = data.get('column_id')
    if not column_id:
        raise ValueError('column_id é obrigatório')

    entry = get_engine().move_column(
        column_id, board_id, data.get('after_column_id'),
        expected_version=data.get('expected'),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


@require_POST
@csrf_exempt
@api_requer_acesso_board
@traduzir_erros
def criar_cartao(request, board_id):
    """Cria cartão na coluna; sem after_card_id vai para o fim"""
    data = _json_body(request)
    column_id = data.get('column_id')
    titulo = (data.get('title') or '').strip()

    if not all([column_id, titulo]):
        raise ValueError('column_id e title são obrigatórios')

    _coluna_do_board(request.board, column_id)

    coluna = Coluna.objects.get(pk=column_id)
    if not coluna.pode_adicionar_item():
        raise InvalidMoveTarget(f'Coluna {coluna.titulo} atingiu limite WIP ({coluna.limite_wip})')

    entry = get_engine().create_card(
        column_id, titulo, data['after_card_id'] if 'after_card_id' in data else LAST,
        expected_version=data.get('expected'),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry, status=201)


@require_POST
@csrf_exempt
@api_requer_acesso_board
@traduzir_erros
def criar_coluna(request, board_id):
    """Cria coluna no board (gerente ou admin); sem after_column_id vai para o fim"""
    if not VortexPermissions.pode_gerenciar_colunas(request.user, request.board):
        return JsonResponse({'success': False, 'error': 'Apenas gerentes e administradores'}, status=403)

    data = _json_body(request)
    titulo = (data.get('title') or '').strip()
    if not titulo:
        raise ValueError('title é obrigatório')

    entry = get_engine().create_column(
        board_id, titulo, data['after_column_id'] if 'after_column_id' in data else LAST,
        expected_version=data.get('expected'),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry, status=201)


@require_POST
@csrf_exempt
@api_requer_acesso_board
@traduzir_erros
def remover_coluna(request, board_id, column_id):
    """Remove coluna vazia (gerente ou admin)"""
    if not VortexPermissions.pode_gerenciar_colunas(request.user, request.board):
        return JsonResponse({'success': False, 'error': 'Apenas gerentes e administradores'}, status=403)

    _coluna_do_board(request.board, column_id)
    data = _json_body(request)
    entry = get_engine().delete_column(
        column_id,
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


# =============================================================================
# CARTÕES
# =============================================================================

@require_POST
@csrf_exempt
@api_requer_acesso_cartao
@traduzir_erros
def arquivar_cartao(request, card_id):
    """Arquiva o cartão (sai de toda a ordenação)"""
    data = _json_body(request)
    entry = get_engine().delete_card(
        card_id,
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


@require_POST
@csrf_exempt
@api_requer_acesso_cartao
@traduzir_erros
def atribuir_cartao(request, card_id):
    """Adiciona/remove responsáveis; só membros do projeto podem ser atribuídos"""
    data = _json_body(request)
    projeto = request.board.projeto
    membros = {str(pk) for pk in projeto.membros.values_list('id', flat=True)}
    membros.add(str(projeto.criado_por_id))

    added = [str(u) for u in data.get('added', [])]
    fora = [u for u in added if u not in membros]
    if fora:
        raise ValueError(f'usuários fora do projeto: {", ".join(fora)}')

    entry = get_engine().assign_card(
        card_id, added=added, removed=data.get('removed', []),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


@require_POST
@csrf_exempt
@api_requer_acesso_cartao
@traduzir_erros
def comentar_cartao(request, card_id):
    """
    Adiciona comentário
    Menções: @usuario no texto, @card, @board ou lista explícita em `mentions`
    """
    data = _json_body(request)
    texto = (data.get('text') or '').strip()
    if not texto:
        raise ValueError('text é obrigatório')

    entry = get_engine().add_comment(
        card_id, texto, request.user.id,
        mentions=data.get('mentions', []),
        actor_session_id=data.get('session_id', ''),
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry, status=201)


@require_POST
@csrf_exempt
@api_requer_acesso_cartao
@traduzir_erros
def alterar_prazo(request, card_id):
    """Altera o prazo (YYYY-MM-DD ou null)"""
    data = _json_body(request)
    entry = get_engine().set_due_date(
        card_id, data.get('due_date'),
        actor_session_id=data.get('session_id', ''),
        actor_user_id=request.user.id,
        operation_id=data.get('operation_id'),
    )
    return _entry_response(entry)


# =============================================================================
# NOTIFICAÇÕES
# =============================================================================

@require_GET
@api_login_requerido
@traduzir_erros
def listar_notificacoes(request):
    """Notificações do usuário, mais recentes primeiro"""
    unread_only = request.GET.get('unread') in ('1', 'true')
    page = int(request.GET.get('page', 1))
    limit = min(int(request.GET.get('limit', 20)), 100)

    items, total = get_engine().list_notifications(
        request.user.id, unread_only=unread_only, page=page, limit=limit
    )
    return JsonResponse({
        'success': True,
        'notifications': [n.to_payload() for n in items],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit,
        },
    })


@require_GET
@api_login_requerido
def notificacoes_nao_lidas(request):
    return JsonResponse({'success': True, 'count': get_engine().unread_count(request.user.id)})


@require_POST
@csrf_exempt
@api_login_requerido
@traduzir_erros
def marcar_notificacao_lida(request, notification_id):
    notification = get_engine().mark_as_read(request.user.id, notification_id)
    return JsonResponse({'success': True, 'notification': notification.to_payload()})


@require_POST
@csrf_exempt
@api_login_requerido
def marcar_todas_lidas(request):
    updated = get_engine().mark_all_as_read(request.user.id)
    return JsonResponse({'success': True, 'updated': updated})


@require_POST
@csrf_exempt
@api_login_requerido
@traduzir_erros
def excluir_notificacao(request, notification_id):
    get_engine().delete_notification(request.user.id, notification_id)
    return JsonResponse({'success': True})
