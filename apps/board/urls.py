# apps/board/urls.py

from django.urls import path
from . import views

app_name = 'board'

urlpatterns = [
    # Estado e replay do registro de mudanças
    path('<int:board_id>/estado/', views.board_estado, name='estado'),
    path('<int:board_id>/mudancas/', views.board_mudancas, name='mudancas'),

    # Ordenação (drag-and-drop)
    path('<int:board_id>/mover-cartao/', views.mover_cartao, name='mover_cartao'),
    path('<int:board_id>/mover-coluna/', views.mover_coluna, name='mover_coluna'),

    # Criação e remoção
    path('<int:board_id>/criar-cartao/', views.criar_cartao, name='criar_cartao'),
    path('<int:board_id>/criar-coluna/', views.criar_coluna, name='criar_coluna'),
    path('<int:board_id>/coluna/<int:column_id>/remover/', views.remover_coluna, name='remover_coluna'),
    path('cartao/<int:card_id>/arquivar/', views.arquivar_cartao, name='arquivar_cartao'),

    # Atributos do cartão
    path('cartao/<int:card_id>/responsaveis/', views.atribuir_cartao, name='atribuir_cartao'),
    path('cartao/<int:card_id>/comentar/', views.comentar_cartao, name='comentar_cartao'),
    path('cartao/<int:card_id>/prazo/', views.alterar_prazo, name='alterar_prazo'),

    # Notificações
    path('notificacoes/', views.listar_notificacoes, name='notificacoes'),
    path('notificacoes/nao-lidas/', views.notificacoes_nao_lidas, name='notificacoes_nao_lidas'),
    path('notificacoes/marcar-todas/', views.marcar_todas_lidas, name='marcar_todas_lidas'),
    path('notificacoes/<int:notification_id>/lida/', views.marcar_notificacao_lida, name='marcar_lida'),
    path('notificacoes/<int:notification_id>/excluir/', views.excluir_notificacao, name='excluir_notificacao'),
]
