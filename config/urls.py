# config/urls.py

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    # Admin
    path('admin/', admin.site.urls),

    # Health check
    path('health/', include('health_check.urls')),

    # Ordenação, sincronização e notificações
    path('board/', include('apps.board.urls')),
]

# Customizar títulos do admin
admin.site.site_header = 'Vortex Board Admin'
admin.site.site_title = 'Vortex Board'
admin.site.index_title = 'Administração do Sistema'
