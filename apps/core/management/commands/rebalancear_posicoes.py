# apps/core/management/commands/rebalancear_posicoes.py

from django.core.management.base import BaseCommand, CommandError

from apps.board.exceptions import SyncError
from apps.board.services import get_engine
from apps.core.models import Board


class Command(BaseCommand):
    help = 'Rebalanceia as chaves de posição de colunas e cartões (gera entradas no registro)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--board',
            type=int,
            action='append',
            help='ID do board (pode repetir). Sem a opção, todos os boards ativos'
        )

    def handle(self, *args, **options):
        """
        Reescreve chaves igualmente espaçadas onde estão apertadas ou fora de ordem
        Cada rebalanceamento vira uma entrada no registro e chega aos clientes
        """
        engine = get_engine()

        boards = Board.objects.filter(ativo=True).order_by('id')
        if options['board']:
            boards = boards.filter(id__in=options['board'])
            faltando = set(options['board']) - set(boards.values_list('id', flat=True))
            if faltando:
                raise CommandError(f'Boards não encontrados: {sorted(faltando)}')

        total = 0
        for board in boards:
            self.stdout.write(f'📐 Board {board.id} - {board.titulo}')
            try:
                alteradas = self._rebalancear_board(engine, board)
            except SyncError as e:
                self.stdout.write(self.style.ERROR(f'  ❌ Falhou: {e}'))
                continue
            total += alteradas

        self.stdout.write(self.style.SUCCESS(f'✅ {total} rebalanceamento(s) aplicado(s)'))

    def _rebalancear_board(self, engine, board):
        alteradas = 0

        if engine.rebalance_board(board.id) is not None:
            self.stdout.write('  ✅ Colunas rebalanceadas')
            alteradas += 1

        for coluna_id, titulo in board.colunas.values_list('id', 'titulo'):
            if engine.rebalance_column(coluna_id) is not None:
                self.stdout.write(f'  ✅ Cartões de "{titulo}" rebalanceados')
                alteradas += 1

        return alteradas
