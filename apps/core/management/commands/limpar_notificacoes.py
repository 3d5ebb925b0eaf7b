# apps/core/management/commands/limpar_notificacoes.py

from django.core.management.base import BaseCommand

from apps.board.services import get_engine


class Command(BaseCommand):
    help = 'Remove notificações expiradas (após NOTIFICATION_TTL_DAYS)'

    def handle(self, *args, **options):
        removidas = get_engine().purge_expired_notifications()
        self.stdout.write(self.style.SUCCESS(f'🧹 {removidas} notificação(ões) expirada(s) removida(s)'))
