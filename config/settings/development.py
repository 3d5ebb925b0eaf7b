# config/settings/development.py

from .base import *

# === DESENVOLVIMENTO ===

DEBUG = True

ALLOWED_HOSTS = ['localhost', '127.0.0.1', '0.0.0.0']

# === BANCO DE DADOS ===

# PostgreSQL da base (DB_* ou DATABASE_URL); SQLite só se pedido
if env('USE_SQLITE', cast=bool, default=False):
    print("🔄 Usando SQLite para desenvolvimento")
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
            # Locks do SQLite: espera antes de virar PersistenceUnavailable
            'OPTIONS': {'timeout': 20},
        }
    }
else:
    DATABASES['default']['CONN_MAX_AGE'] = 60
    print(f"🐘 Usando PostgreSQL: {DATABASES['default']['NAME']}@{DATABASES['default'].get('HOST')}")

# === LOGGING MAIS VERBOSO ===

LOGGING['handlers']['console']['level'] = 'DEBUG'
LOGGING['loggers']['apps']['level'] = 'DEBUG'

# === CACHE ===

# Cache em memória; Redis só se REDIS_URL responder
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'vortex-dev-cache',
    }
}

if env('REDIS_URL', default=None):
    import redis

    try:
        redis.from_url(env('REDIS_URL')).ping()
        CACHES['default'] = {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': env('REDIS_URL'),
            'OPTIONS': {
                'CLIENT_CLASS': 'django_redis.client.DefaultClient',
            }
        }
        print("🔴 Redis conectado com sucesso!")
    except redis.exceptions.RedisError as e:
        print(f"⚠️  Redis não disponível ({e}), usando cache em memória local")

# === SINCRONIZAÇÃO ===

# Um processo só: channel layer em memória e sem repasse entre processos
CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels.layers.InMemoryChannelLayer'
    }
}
VORTEX_SYNC['RELAY'] = env('VORTEX_SYNC_RELAY', default='local')

# Breakpoints no meio de um movimento não devem virar timeout no cliente
VORTEX_SYNC['MOVE_TIMEOUT'] = env.float('VORTEX_MOVE_TIMEOUT', default=60.0)

SESSION_COOKIE_SECURE = False
CSRF_COOKIE_SECURE = False

# shell_plus já com o motor à mão
SHELL_PLUS_IMPORTS = [
    'from apps.core.models import *',
    'from apps.board.services import get_engine',
    'from apps.board.positions import Neighborhood, PositionSpace',
]

print(f"🚀 Configurações de DESENVOLVIMENTO carregadas (sync: {VORTEX_SYNC['STORAGE']}/{VORTEX_SYNC['RELAY']})")
