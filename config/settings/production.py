# config/settings/production.py

import logging
import dj_database_url
from .base import *

# === PRODUÇÃO ===

DEBUG = False

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['vortex-board.com', 'www.vortex-board.com'])

# Verificar variáveis obrigatórias
for setting in ['SECRET_KEY', 'DATABASE_URL', 'REDIS_URL']:
    if not env(setting, default=None):
        raise ValueError(f"Variável de ambiente {setting} é obrigatória em produção")

# === SEGURANÇA ===

SECURE_SSL_REDIRECT = True
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True
SECURE_CONTENT_TYPE_NOSNIFF = True
SECURE_HSTS_SECONDS = 31536000  # 1 ano
SECURE_HSTS_INCLUDE_SUBDOMAINS = True
SECURE_HSTS_PRELOAD = True
X_FRAME_OPTIONS = 'DENY'

# === BANCO DE DADOS ===

# O compare-and-set das posições depende de transações reais: sempre PostgreSQL
DATABASES['default'] = dj_database_url.parse(
    env('DATABASE_URL'),
    conn_max_age=600,
    conn_health_checks=True,
)

# === LOGGING ===

LOGGING['handlers']['file']['filename'] = env('LOG_FILE', default='/var/log/vortex-board/vortex.log')

# Sentry (se configurado): conflitos ficam em INFO, só falhas de persistência viram evento
if env('SENTRY_DSN', default=None):
    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=env('SENTRY_DSN'),
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=env.float('SENTRY_TRACES_SAMPLE_RATE', default=0.1),
        send_default_pii=False,
        environment=env('ENVIRONMENT', default='production')
    )

# === SINCRONIZAÇÃO ===

# Vários workers ASGI: entradas e notificações passam pelo channel layer Redis
VORTEX_SYNC['STORAGE'] = 'orm'
VORTEX_SYNC['RELAY'] = 'channels'

# === PERFORMANCE E MONITORAMENTO ===

MIDDLEWARE = ['django.middleware.gzip.GZipMiddleware'] + MIDDLEWARE

HEALTH_CHECK = {
    'DISK_USAGE_MAX': 90,  # 90% max usage
    'MEMORY_MIN': 100,  # 100MB min memory
}

print(f"🚀 Configurações de PRODUÇÃO carregadas (hosts: {ALLOWED_HOSTS[:3]})")
