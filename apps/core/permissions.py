# apps/core/permissions.py

from functools import wraps

from django.http import JsonResponse


class VortexPermissions:
    """
    Sistema de permissões customizado do Vortex Board
    Baseado nos tipos de usuário: admin, gerente, funcionário
    """

    @staticmethod
    def is_admin(user):
        """Verifica se é administrador"""
        return user.is_authenticated and user.tipo == 'admin'

    @staticmethod
    def is_gerente_ou_admin(user):
        """Verifica se é gerente ou admin"""
        return user.is_authenticated and user.tipo in ['admin', 'gerente']

    @staticmethod
    def tem_acesso_projeto(user, projeto):
        """Verifica se tem acesso ao projeto"""
        if not user.is_authenticated:
            return False

        # Admin tem acesso a todos os projetos
        if user.tipo == 'admin':
            return True

        if projeto.criado_por_id == user.id:
            return True

        return projeto.membros.filter(id=user.id).exists()

    @staticmethod
    def tem_acesso_board(user, board):
        """Verifica se tem acesso ao board"""
        return VortexPermissions.tem_acesso_projeto(user, board.projeto)

    @staticmethod
    def pode_gerenciar_colunas(user, board):
        """Criar, remover e reordenar colunas: gerente ou admin com acesso"""
        return (
            VortexPermissions.is_gerente_ou_admin(user)
            and VortexPermissions.tem_acesso_board(user, board)
        )


def _negado(mensagem, status=403):
    return JsonResponse({'success': False, 'error': mensagem}, status=status)


def api_requer_acesso_board(view_func):
    """
    Decorador para views JSON que recebem board_id
    Retorna 401/403/404 em JSON ao invés de redirecionar
    """

    @wraps(view_func)
    def wrapped_view(request, board_id, *args, **kwargs):
        from .models import Board

        if not request.user.is_authenticated:
            return _negado('Autenticação necessária.', status=401)

        try:
            board = Board.objects.select_related('projeto').get(id=board_id, ativo=True)
        except Board.DoesNotExist:
            return _negado('Board não encontrado.', status=404)

        if not VortexPermissions.tem_acesso_board(request.user, board):
            return _negado('Você não tem acesso a este board.')

        # Adiciona o board ao request para uso na view
        request.board = board
        return view_func(request, board_id, *args, **kwargs)

    return wrapped_view


def api_requer_acesso_cartao(view_func):
    """Mesmo contrato de api_requer_acesso_board, a partir de card_id"""

    @wraps(view_func)
    def wrapped_view(request, card_id, *args, **kwargs):
        from .models import Cartao

        if not request.user.is_authenticated:
            return _negado('Autenticação necessária.', status=401)

        try:
            cartao = Cartao.objects.select_related('coluna__board__projeto').get(
                id=card_id, arquivado=False
            )
        except Cartao.DoesNotExist:
            return _negado('Cartão não encontrado.', status=404)

        if not VortexPermissions.tem_acesso_board(request.user, cartao.coluna.board):
            return _negado('Você não tem acesso a este board.')

        request.cartao = cartao
        request.board = cartao.coluna.board
        return view_func(request, card_id, *args, **kwargs)

    return wrapped_view


def api_login_requerido(view_func):
    """Versão JSON do login_required"""

    @wraps(view_func)
    def wrapped_view(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _negado('Autenticação necessária.', status=401)
        return view_func(request, *args, **kwargs)

    return wrapped_view
