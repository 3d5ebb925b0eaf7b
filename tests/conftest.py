"""
Fixtures compartilhadas

  • repo / engine : motor completo em memória (sem banco)
  • ids           : board semeado: colunas A e B, cartões a1..a3 em A, b1 em B
  • directory     : MemoryDirectory com ana (10), bia (11) e caio (12)
  • usuarios      : gerente, membro e estranho no banco
  • quadro        : board no banco com as colunas padrão e dois cartões
"""

from types import SimpleNamespace

import pytest

from apps.board.changelog import ChangeLog
from apps.board.mentions import MemoryDirectory
from apps.board.notifications import MemoryInbox
from apps.board.persistence import MemoryRepository
from apps.board.services import BoardSyncEngine


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def directory():
    directory = MemoryDirectory()
    directory.add_user('ana', '10')
    directory.add_user('bia', '11')
    directory.add_user('caio', '12')
    return directory


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(repo, directory, sleeps):
    engine = BoardSyncEngine(
        repo, ChangeLog(), MemoryInbox(), directory,
        retries=3, backoff=0.01, max_backoff=0.04, sleep=sleeps.append,
    ).start()
    yield engine
    engine.shutdown()


@pytest.fixture
def ids(repo, directory):
    board = repo.add_board('Sprint', board_id='1')
    a = repo.add_column(board, 'A', key='1', column_id='100')
    b = repo.add_column(board, 'B', key='2', column_id='200')
    cards = SimpleNamespace(
        board=board, a=a, b=b,
        a1=repo.add_card(a, 'a1', key='1', card_id='101'),
        a2=repo.add_card(a, 'a2', key='2', card_id='102'),
        a3=repo.add_card(a, 'a3', key='3', card_id='103'),
        b1=repo.add_card(b, 'b1', key='1', card_id='201'),
    )
    for user_id in ('10', '11', '12'):
        directory.members.setdefault(board, set()).add(user_id)
    return cards


def collector():
    """Callback de entrega que guarda as entradas recebidas"""
    received = []

    def deliver(entry):
        received.append(entry)

    deliver.received = received
    return deliver


@pytest.fixture
def make_collector():
    return collector


# === BANCO (ORM) ===

@pytest.fixture
def usuarios(django_user_model):
    """gerente dono do projeto, membro funcionário e um estranho"""
    return SimpleNamespace(
        gerente=django_user_model.objects.create_user('gil', password='senha123', tipo='gerente'),
        membro=django_user_model.objects.create_user('mari', password='senha123'),
        estranho=django_user_model.objects.create_user('zeca', password='senha123'),
    )


@pytest.fixture
def quadro(usuarios):
    """Board com as colunas padrão e dois cartões em Backlog"""
    from apps.core.models import Board, Cartao, Projeto

    projeto = Projeto.objects.create(nome='Vortex', criado_por=usuarios.gerente)
    projeto.membros.add(usuarios.membro)
    board = Board.objects.create(titulo='Sprint 1', projeto=projeto)
    backlog, progresso, revisao, concluido = board.colunas.order_by('posicao')
    primeiro = Cartao.objects.create(titulo='Primeiro', coluna=backlog, posicao=1)
    segundo = Cartao.objects.create(titulo='Segundo', coluna=backlog, posicao=2)
    return SimpleNamespace(
        board=board, projeto=projeto,
        backlog=backlog, progresso=progresso, revisao=revisao, concluido=concluido,
        primeiro=primeiro, segundo=segundo,
    )
