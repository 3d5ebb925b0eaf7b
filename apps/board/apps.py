# apps/board/apps.py

import atexit
import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class BoardConfig(AppConfig):
    """Configuração da app Board"""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.board'
    verbose_name = 'Board - Ordenação e Sincronização'

    engine = None

    def ready(self):
        """
        Inicialização da app
        Cria e inicia o motor de sincronização do processo
        """
        from .services import build_engine

        self.engine = build_engine().start()
        atexit.register(self.engine.shutdown)

        logger.info("🔌 Board App inicializada - WebSockets habilitados")
