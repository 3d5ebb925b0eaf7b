"""Endpoints JSON do board: permissões, códigos de status e payloads."""

import json

import pytest
from django.urls import reverse

from apps.board.exceptions import ChangeLogAppendError
from apps.board.services import get_engine
from apps.core.models import Cartao, Coluna, Notificacao

pytestmark = pytest.mark.django_db


def post(client, url, data=None):
    return client.post(url, data=json.dumps(data or {}), content_type='application/json')


@pytest.fixture
def membro(client, usuarios):
    client.force_login(usuarios.membro)
    return client


@pytest.fixture
def gerente(client, usuarios):
    client.force_login(usuarios.gerente)
    return client


class TestAcesso:

    def test_anonymous_gets_401(self, client, quadro):
        response = client.get(reverse('board:estado', args=[quadro.board.pk]))
        assert response.status_code == 401

    def test_outsider_gets_403(self, client, usuarios, quadro):
        client.force_login(usuarios.estranho)
        response = client.get(reverse('board:estado', args=[quadro.board.pk]))
        assert response.status_code == 403

    def test_unknown_board_gets_404(self, membro, quadro):
        response = membro.get(reverse('board:estado', args=[99999]))
        assert response.status_code == 404

    def test_member_reads_state(self, membro, quadro):
        response = membro.get(reverse('board:estado', args=[quadro.board.pk]))

        assert response.status_code == 200
        board = response.json()['board']
        assert board['sequence'] == 0
        assert [c['title'] for c in board['columns']] == ['Backlog', 'Em Progresso', 'Em Revisão', 'Concluído']

    def test_get_on_mutation_is_rejected(self, membro, quadro):
        response = membro.get(reverse('board:mover_cartao', args=[quadro.board.pk]))
        assert response.status_code == 405


class TestOrdenacao:

    def test_move_card(self, membro, quadro):
        response = post(membro, reverse('board:mover_cartao', args=[quadro.board.pk]), {
            'card_id': quadro.segundo.pk,
            'column_id': quadro.progresso.pk,
            'after_card_id': None,
            'operation_id': 'op-1',
        })

        assert response.status_code == 200
        entry = response.json()['entry']
        assert entry['sequenceNumber'] == 1
        assert entry['operationId'] == 'op-1'
        assert Cartao.objects.get(pk=quadro.segundo.pk).coluna_id == quadro.progresso.pk

    def test_stale_neighborhood_returns_409(self, membro, quadro):
        response = post(membro, reverse('board:mover_cartao', args=[quadro.board.pk]), {
            'card_id': quadro.segundo.pk,
            'column_id': quadro.progresso.pk,
            'after_card_id': None,
            'expected': {'lowerId': str(quadro.primeiro.pk), 'lowerKey': '1'},
        })

        assert response.status_code == 409
        body = response.json()
        assert body['conflict'] is True
        assert body['actual'] == {'lowerId': None, 'lowerKey': None, 'upperId': None, 'upperKey': None}

    def test_column_from_another_board_returns_400(self, membro, quadro):
        from apps.core.models import Board

        outro = Board.objects.create(titulo='Outro', projeto=quadro.projeto)
        response = post(membro, reverse('board:mover_cartao', args=[quadro.board.pk]), {
            'card_id': quadro.primeiro.pk,
            'column_id': outro.colunas.first().pk,
        })
        assert response.status_code == 400

    def test_invalid_json_returns_400(self, membro, quadro):
        response = membro.post(
            reverse('board:mover_cartao', args=[quadro.board.pk]),
            data='{nada', content_type='application/json',
        )
        assert response.status_code == 400

    def test_wip_limit(self, membro, quadro):
        Coluna.objects.filter(pk=quadro.progresso.pk).update(limite_wip=1)
        Cartao.objects.create(titulo='Ocupando', coluna=quadro.progresso, posicao=1)

        response = post(membro, reverse('board:mover_cartao', args=[quadro.board.pk]), {
            'card_id': quadro.primeiro.pk,
            'column_id': quadro.progresso.pk,
        })

        assert response.status_code == 400
        assert 'WIP' in response.json()['error']

    def test_unavailable_changelog_returns_503(self, membro, quadro, monkeypatch):
        def fail(entry):
            raise ChangeLogAppendError('disco cheio')

        monkeypatch.setattr(get_engine().changelog, 'append', fail)
        response = post(membro, reverse('board:mover_cartao', args=[quadro.board.pk]), {
            'card_id': quadro.segundo.pk,
            'column_id': quadro.progresso.pk,
        })

        assert response.status_code == 503
        assert Cartao.objects.get(pk=quadro.segundo.pk).coluna_id == quadro.backlog.pk

    def test_create_card_goes_last(self, membro, quadro):
        response = post(membro, reverse('board:criar_cartao', args=[quadro.board.pk]), {
            'column_id': quadro.backlog.pk,
            'title': 'Terceiro',
        })

        assert response.status_code == 201
        novo = response.json()['entry']['affectedEntityId']
        ordem = list(Cartao.objects.filter(coluna=quadro.backlog).values_list('id', flat=True))
        assert ordem == [quadro.primeiro.pk, quadro.segundo.pk, int(novo)]

    def test_column_management_is_for_managers(self, membro, quadro):
        response = post(membro, reverse('board:mover_coluna', args=[quadro.board.pk]), {
            'column_id': quadro.concluido.pk,
        })
        assert response.status_code == 403

        response = post(membro, reverse('board:criar_coluna', args=[quadro.board.pk]), {'title': 'QA'})
        assert response.status_code == 403

    def test_manager_reorders_and_creates_columns(self, gerente, quadro):
        response = post(gerente, reverse('board:mover_coluna', args=[quadro.board.pk]), {
            'column_id': quadro.concluido.pk,
            'after_column_id': None,
        })
        assert response.status_code == 200

        response = post(gerente, reverse('board:criar_coluna', args=[quadro.board.pk]), {'title': 'QA'})
        assert response.status_code == 201

        titulos = list(quadro.board.colunas.values_list('titulo', flat=True))
        assert titulos == ['Concluído', 'Backlog', 'Em Progresso', 'Em Revisão', 'QA']

    def test_remove_column(self, gerente, quadro):
        url = reverse('board:remover_coluna', args=[quadro.board.pk, quadro.backlog.pk])
        assert post(gerente, url).status_code == 400

        url = reverse('board:remover_coluna', args=[quadro.board.pk, quadro.revisao.pk])
        assert post(gerente, url).status_code == 200
        assert not Coluna.objects.filter(pk=quadro.revisao.pk).exists()

    def test_changes_since(self, membro, quadro):
        url = reverse('board:mover_cartao', args=[quadro.board.pk])
        post(membro, url, {'card_id': quadro.primeiro.pk, 'column_id': quadro.progresso.pk})
        post(membro, url, {'card_id': quadro.segundo.pk, 'column_id': quadro.progresso.pk})

        response = membro.get(reverse('board:mudancas', args=[quadro.board.pk]), {'since': 1})

        body = response.json()
        assert [e['sequenceNumber'] for e in body['entries']] == [2]
        assert body['lastSequence'] == 2

        response = membro.get(reverse('board:mudancas', args=[quadro.board.pk]), {'since': 5})
        assert response.json() == {'success': True, 'entries': [], 'lastSequence': 5}


class TestCartoes:

    def test_archive_card(self, membro, quadro):
        response = post(membro, reverse('board:arquivar_cartao', args=[quadro.primeiro.pk]))

        assert response.status_code == 200
        assert Cartao.objects.get(pk=quadro.primeiro.pk).arquivado
        response = post(membro, reverse('board:arquivar_cartao', args=[quadro.primeiro.pk]))
        assert response.status_code == 404

    def test_only_project_members_can_be_assigned(self, membro, usuarios, quadro):
        url = reverse('board:atribuir_cartao', args=[quadro.primeiro.pk])

        response = post(membro, url, {'added': [usuarios.estranho.pk]})
        assert response.status_code == 400

        response = post(membro, url, {'added': [usuarios.gerente.pk]})
        assert response.status_code == 200
        assert response.json()['entry']['details']['added'] == [str(usuarios.gerente.pk)]

        response = post(membro, url, {'added': [usuarios.gerente.pk]})
        assert response.json() == {'success': True, 'entry': None}

    def test_comment(self, membro, quadro):
        url = reverse('board:comentar_cartao', args=[quadro.primeiro.pk])

        assert post(membro, url, {'text': '   '}).status_code == 400
        response = post(membro, url, {'text': 'pronto para revisão @gil'})
        assert response.status_code == 201
        assert quadro.primeiro.comentarios.count() == 1

    def test_due_date(self, membro, quadro):
        url = reverse('board:alterar_prazo', args=[quadro.primeiro.pk])

        assert post(membro, url, {'due_date': '31/12/2026'}).status_code == 400
        response = post(membro, url, {'due_date': '2026-12-31'})
        assert response.status_code == 200
        assert response.json()['entry']['details']['dueDate'] == '2026-12-31'


class TestNotificacoes:

    @pytest.fixture
    def notificado(self, client, usuarios, quadro, django_capture_on_commit_callbacks):
        """Membro com duas notificações de atribuição"""
        engine = get_engine()
        with django_capture_on_commit_callbacks(execute=True):
            engine.assign_card(quadro.primeiro.pk, added=[usuarios.membro.pk], actor_user_id=usuarios.gerente.pk)
            engine.assign_card(quadro.segundo.pk, added=[usuarios.membro.pk], actor_user_id=usuarios.gerente.pk)
        client.force_login(usuarios.membro)
        return client

    def test_list_and_count(self, notificado):
        response = notificado.get(reverse('board:notificacoes'), {'limit': 1})

        body = response.json()
        assert len(body['notifications']) == 1
        assert body['pagination'] == {'page': 1, 'limit': 1, 'total': 2, 'pages': 2}
        assert body['notifications'][0]['kind'] == 'card_assigned'

        assert notificado.get(reverse('board:notificacoes_nao_lidas')).json()['count'] == 2

    def test_mark_read_and_delete(self, notificado, usuarios):
        notificacao = Notificacao.objects.filter(destinatario=usuarios.membro).first()

        response = post(notificado, reverse('board:marcar_lida', args=[notificacao.pk]))
        assert response.json()['notification']['read'] is True
        assert post(notificado, reverse('board:marcar_todas_lidas')).json()['updated'] == 1

        assert post(notificado, reverse('board:excluir_notificacao', args=[notificacao.pk])).status_code == 200
        assert post(notificado, reverse('board:marcar_lida', args=[notificacao.pk])).status_code == 404

    def test_other_users_notifications_are_invisible(self, client, usuarios, notificado):
        notificacao = Notificacao.objects.filter(destinatario=usuarios.membro).first()
        client.force_login(usuarios.estranho)

        assert client.get(reverse('board:notificacoes')).json()['pagination']['total'] == 0
        assert post(client, reverse('board:marcar_lida', args=[notificacao.pk])).status_code == 404
