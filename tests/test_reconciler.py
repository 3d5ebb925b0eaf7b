"""ClientReconciler: movimentos otimistas, conflitos e convergência."""

import pytest

from apps.board.exceptions import (
    InvalidMoveTarget,
    InvalidTransition,
    OrderingConflict,
    PersistenceUnavailable,
    ResyncRequired,
)
from apps.board.reconciler import BoardShadow, ClientReconciler, PendingState


def server_layout(engine, board_id):
    return BoardShadow.from_state(engine.board_state(board_id)).layout()


@pytest.fixture
def client(engine, ids):
    return engine.reconciler(ids.board, 'sessao-1', user_id='10')


@pytest.fixture
def other(engine, ids):
    return engine.reconciler(ids.board, 'sessao-2', user_id='11')


def test_load_mirrors_board_state(client, engine, ids):
    assert client.confirmed.layout() == {
        ids.a: [ids.a1, ids.a2, ids.a3],
        ids.b: [ids.b1],
    }
    assert client.watermark == 0


def test_optimistic_view_before_submit(client, ids):
    pending = client.propose_card_move(ids.a1, ids.b, after_card_id=ids.b1)

    assert client.view.card_order(ids.b) == [ids.b1, ids.a1]
    assert client.confirmed.card_order(ids.b) == [ids.b1]
    assert pending.state is PendingState.PENDING
    assert client.pending() == [pending]


def test_confirmed_move(client, engine, ids):
    pending = client.propose_card_move(ids.a3, ids.a, after_card_id=None)
    entry = client.submit(pending)

    assert pending.state is PendingState.CONFIRMED
    assert pending.entry == entry
    assert client.pending() == []
    assert client.watermark == entry.sequence_number == 1
    assert client.confirmed.layout() == server_layout(engine, ids.board)


def test_conflict_blocks_until_resync(client, other, engine, ids):
    other.move_card(ids.b1, ids.a, after_card_id=ids.a1)

    pending = client.propose_card_move(ids.a3, ids.a, after_card_id=ids.a1)
    with pytest.raises(OrderingConflict):
        client.submit(pending)

    assert pending.state is PendingState.CONFLICTED
    assert client.blocked
    with pytest.raises(ResyncRequired):
        client.propose_card_move(ids.a2, ids.a)

    client.resync()
    assert pending.state is PendingState.RESYNCED
    assert not client.blocked
    assert client.confirmed.layout() == server_layout(engine, ids.board)


def test_move_retries_once_after_conflict(client, other, engine, ids):
    other.move_card(ids.b1, ids.a, after_card_id=ids.a1)

    entry = client.move_card(ids.a3, ids.a, after_card_id=ids.a1)

    assert entry.sequence_number == 2
    assert client.confirmed.card_order(ids.a) == [ids.a1, ids.a3, ids.b1, ids.a2]
    assert client.conflicted == []
    assert client.pending() == []


def test_column_move(client, engine, ids):
    client.move_column(ids.b, after_column_id=None)
    assert client.confirmed.column_order() == [ids.b, ids.a]
    assert client.confirmed.layout() == server_layout(engine, ids.board)


def test_receive_is_idempotent(client, engine, ids):
    entry = engine.move_card(ids.a1, ids.b)

    assert client.receive(entry) is True
    layout = client.confirmed.layout()
    assert client.receive(entry) is False
    assert client.confirmed.layout() == layout
    assert client.watermark == 1


def test_gap_is_filled_from_log(client, engine, ids):
    engine.move_card(ids.a1, ids.b)
    engine.move_card(ids.a2, ids.b, after_card_id=ids.a1)
    third = engine.create_card(ids.a, 'novo')

    client.receive(third)

    assert client.watermark == 3
    assert client.confirmed.layout() == server_layout(engine, ids.board)


def test_entries_from_other_boards_are_ignored(client, engine, repo, ids):
    board = repo.add_board('Outro', board_id='2')
    column = repo.add_column(board, 'X', column_id='300')
    entry = engine.create_card(column, 'x')
    assert client.receive(entry) is False


def test_cancel_only_while_unresolved(client, ids):
    pending = client.propose_card_move(ids.a1, ids.b)
    assert client.cancel(pending.operation_id).state is PendingState.CANCELLED
    assert client.view.card_order(ids.b) == [ids.b1]

    with pytest.raises(InvalidTransition):
        client.cancel(pending.operation_id)
    with pytest.raises(InvalidTransition):
        client.submit(pending)


def test_unknown_neighbor_in_local_view(client, ids):
    with pytest.raises(InvalidMoveTarget):
        client.propose_card_move(ids.a1, ids.b, after_card_id='999')


def test_persistence_failure_cancels_and_resyncs(client, engine, repo, ids, sleeps):
    pending = client.propose_card_move(ids.a1, ids.b)
    repo.available = False

    with pytest.raises(PersistenceUnavailable):
        client.submit(pending)

    assert pending.state is PendingState.CANCELLED
    assert sleeps == [0.01, 0.02, 0.04]
    repo.available = True
    assert client.view.layout() == server_layout(engine, ids.board)


def test_subscribed_clients_converge(engine, ids):
    first = engine.reconciler(ids.board, 'sessao-1')
    second = engine.reconciler(ids.board, 'sessao-2')
    engine.subscribe(ids.board, 'sessao-1', first.receive, from_sequence=first.watermark)
    engine.subscribe(ids.board, 'sessao-2', second.receive, from_sequence=second.watermark)

    first.move_card(ids.a1, ids.b, after_card_id=ids.b1)
    second.move_card(ids.b1, ids.a, after_card_id=None)
    second.move_column(ids.b, after_column_id=None)
    engine.create_card(ids.b, 'externo')
    first.move_card(ids.a3, ids.b, after_card_id=None)
    engine.rebalance_column(ids.b)

    expected = server_layout(engine, ids.board)
    assert first.confirmed.layout() == expected
    assert second.confirmed.layout() == expected
    assert first.watermark == second.watermark == engine.changelog.last_sequence(ids.board)


def test_standalone_reconciler_with_state():
    state = {
        'boardId': '7', 'sequence': 4,
        'columns': [{'id': 'c', 'positionKey': '1', 'cards': [{'id': 'x', 'positionKey': '1'}]}],
    }
    reconciler = ClientReconciler('7', 's', transport=None).load(state)
    assert reconciler.watermark == 4
    assert reconciler.view.layout() == {'c': ['x']}


class CancelsThenConflicts:
    """Transporte que cancela o movimento enquanto a chamada está em voo"""

    def __init__(self, engine):
        self.engine = engine
        self.client = None
        self.calls = 0

    def __getattr__(self, name):
        return getattr(self.engine, name)

    def move_card(self, card_id, *args, operation_id=None, **kwargs):
        self.calls += 1
        self.client.cancel(operation_id)
        raise OrderingConflict(card_id)


def test_conflict_after_cancel_keeps_cancelled(engine, ids):
    transport = CancelsThenConflicts(engine)
    client = ClientReconciler(ids.board, 'sessao-3', transport).load()
    transport.client = client

    pending = client.propose_card_move(ids.a1, ids.b)
    with pytest.raises(OrderingConflict):
        client.submit(pending)

    assert pending.state is PendingState.CANCELLED
    assert client.blocked
    assert client.conflicted == []
    client.resync()
    assert not client.blocked


def test_cancelled_move_is_not_retried(engine, ids):
    transport = CancelsThenConflicts(engine)
    client = ClientReconciler(ids.board, 'sessao-3', transport).load()
    transport.client = client

    with pytest.raises(OrderingConflict):
        client.move_card(ids.a1, ids.b)

    assert transport.calls == 1
    assert not client.blocked
    assert client.confirmed.layout() == server_layout(engine, ids.board)


def test_resolved_conflicts_are_not_kept(client, other, engine, ids):
    for _ in range(3):
        other.move_card(ids.b1, ids.a, after_card_id=ids.a1)
        client.move_card(ids.a3, ids.a, after_card_id=ids.a1)
        assert server_layout(engine, ids.board)[ids.a] == [ids.a1, ids.a3, ids.b1, ids.a2]
        other.move_card(ids.b1, ids.b)

    assert client.conflicted == []
    assert client.pending() == []
