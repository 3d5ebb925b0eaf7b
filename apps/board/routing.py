# apps/board/routing.py

from django.urls import re_path

from . import consumers

# Rotas WebSocket para a aplicação board
websocket_urlpatterns = [
    # Fluxo de mudanças do board (replay a partir de ?since=N, depois ao vivo)
    re_path(r'ws/board/(?P<board_id>\d+)/$', consumers.BoardConsumer.as_asgi()),

    # Notificações pessoais do usuário
    re_path(r'ws/notifications/$', consumers.NotificationConsumer.as_asgi()),
]
