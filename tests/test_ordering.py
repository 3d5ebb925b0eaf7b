"""OrderingStore: movimentos, criação, remoção e rebalanceamento."""

from decimal import Decimal

import pytest

from apps.board.events import Operation
from apps.board.exceptions import InvalidMoveTarget, OrderingConflict
from apps.board.ordering import OrderingStore
from apps.board.positions import Neighborhood


@pytest.fixture
def store(repo):
    return OrderingStore(repo)


def order(repo, column_id):
    return repo.read_column(column_id).card_ids()


class TestMoveCard:

    def test_move_within_column(self, store, repo, ids):
        entry = store.move_card(ids.a3, ids.a, after_card_id=ids.a1)
        assert order(repo, ids.a) == [ids.a1, ids.a3, ids.a2]
        assert entry.operation is Operation.MOVE_CARD
        assert entry.sequence_number is None
        assert entry.before_key == Decimal('3')
        assert entry.after_key == Decimal('1.5')

    def test_move_to_top_of_other_column(self, store, repo, ids):
        entry = store.move_card(ids.a2, ids.b, after_card_id=None)
        assert order(repo, ids.b) == [ids.a2, ids.b1]
        assert order(repo, ids.a) == [ids.a1, ids.a3]
        assert entry.details.from_column_id == ids.a
        assert entry.details.column_id == ids.b

    def test_cross_column_bumps_both_versions(self, store, repo, ids):
        store.move_card(ids.a1, ids.b, after_card_id=ids.b1)
        assert repo.read_column(ids.a).version == 1
        assert repo.read_column(ids.b).version == 1

    def test_matching_token_is_accepted(self, store, repo, ids):
        token = Neighborhood(ids.a1, Decimal('1'), ids.a2, Decimal('2'))
        store.move_card(ids.a3, ids.a, after_card_id=ids.a1, expected_version=token)
        assert order(repo, ids.a) == [ids.a1, ids.a3, ids.a2]

    def test_stale_token_is_rejected_without_writing(self, store, repo, ids):
        stale = Neighborhood(ids.a1, Decimal('1'), None, None)
        with pytest.raises(OrderingConflict) as exc:
            store.move_card(ids.b1, ids.a, after_card_id=ids.a1, expected_version=stale)
        assert exc.value.expected == stale
        assert exc.value.actual == Neighborhood(ids.a1, Decimal('1'), ids.a2, Decimal('2'))
        assert order(repo, ids.a) == [ids.a1, ids.a2, ids.a3]
        assert repo.read_column(ids.a).version == 0

    def test_after_card_moved_elsewhere_is_a_conflict(self, store, ids):
        with pytest.raises(OrderingConflict):
            store.move_card(ids.a1, ids.a, after_card_id=ids.b1)

    def test_unknown_targets(self, store, ids):
        with pytest.raises(InvalidMoveTarget):
            store.move_card('999', ids.a)
        with pytest.raises(InvalidMoveTarget):
            store.move_card(ids.a1, '999')
        with pytest.raises(InvalidMoveTarget):
            store.move_card(ids.a1, ids.a, after_card_id='999')
        with pytest.raises(InvalidMoveTarget):
            store.move_card(ids.a1, ids.a, after_card_id=ids.a1)

    def test_no_moves_between_boards(self, store, repo, ids):
        other = repo.add_board('Outro', board_id='2')
        column = repo.add_column(other, 'X', column_id='300')
        with pytest.raises(InvalidMoveTarget):
            store.move_card(ids.a1, column)

    def test_precision_exhaustion_rebalances_column(self, store, repo, ids):
        column = repo.add_column(ids.board, 'Apertada', column_id='400')
        x = repo.add_card(column, 'x', key='1.0', card_id='401')
        y = repo.add_card(column, 'y', key='1.0000000001', card_id='402')
        z = repo.add_card(column, 'z', key='1.0000000002', card_id='403')

        entry = store.move_card(ids.b1, column, after_card_id=x)

        assert order(repo, column) == [x, ids.b1, y, z]
        assert repo.read_column(column).cards == (
            (x, Decimal('1')), (ids.b1, Decimal('2')), (y, Decimal('3')), (z, Decimal('4')),
        )
        assert entry.after_key == Decimal('2')
        assert dict(entry.details.rebalanced) == {x: Decimal('1'), y: Decimal('3'), z: Decimal('4')}


class TestCreateAndDelete:

    def test_create_appends_by_default(self, store, repo, ids):
        entry = store.create_card(ids.a, 'novo')
        assert order(repo, ids.a)[-1] == entry.affected_entity_id
        assert entry.details.position_key == Decimal('4')
        assert entry.details.title == 'novo'

    def test_create_at_top(self, store, repo, ids):
        entry = store.create_card(ids.b, 'topo', after_card_id=None)
        assert order(repo, ids.b) == [entry.affected_entity_id, ids.b1]

    def test_create_in_empty_column(self, store, repo, ids):
        column = repo.add_column(ids.board, 'Vazia', column_id='500')
        entry = store.create_card(column, 'primeiro')
        assert entry.details.position_key == Decimal('1')

    def test_delete_card_leaves_ordering(self, store, repo, ids):
        entry = store.delete_card(ids.a2)
        assert order(repo, ids.a) == [ids.a1, ids.a3]
        assert entry.details.column_id == ids.a
        assert repo.locate_card(ids.a2) is None
        with pytest.raises(InvalidMoveTarget):
            store.delete_card(ids.a2)


class TestColumns:

    def test_move_column_to_front(self, store, repo, ids):
        entry = store.move_column(ids.b, ids.board, after_column_id=None)
        assert repo.read_board(ids.board).column_ids() == [ids.b, ids.a]
        assert entry.new_parent_id == ids.board

    def test_stale_column_token(self, store, ids):
        with pytest.raises(OrderingConflict):
            store.move_column(
                ids.b, ids.board, None, expected_version=Neighborhood(None, None, ids.b, Decimal('2')),
            )

    def test_create_and_delete_column(self, store, repo, ids):
        created = store.create_column(ids.board, 'C')
        assert repo.read_board(ids.board).column_ids() == [ids.a, ids.b, created.affected_entity_id]

        deleted = store.delete_column(created.affected_entity_id)
        assert deleted.before_key == Decimal('3')
        assert repo.read_board(ids.board).column_ids() == [ids.a, ids.b]

    def test_cannot_delete_column_with_cards(self, store, ids):
        with pytest.raises(InvalidMoveTarget):
            store.delete_column(ids.a)

    def test_column_neighbor_must_exist(self, store, ids):
        with pytest.raises(InvalidMoveTarget):
            store.move_column(ids.a, ids.board, after_column_id='999')


class TestRebalance:

    def test_balanced_column_is_untouched(self, store, ids):
        assert store.rebalance_column(ids.a) is None

    def test_rebalance_column(self, store, repo, ids):
        store.move_card(ids.a3, ids.a, after_card_id=ids.a1)
        entry = store.rebalance_column(ids.a)
        assert entry.operation is Operation.REBALANCE_COLUMN
        assert entry.details.keys == (
            (ids.a1, Decimal('1')), (ids.a3, Decimal('2')), (ids.a2, Decimal('3')),
        )
        assert order(repo, ids.a) == [ids.a1, ids.a3, ids.a2]

    def test_rebalance_board(self, store, repo, ids):
        store.move_column(ids.b, ids.board, after_column_id=None)
        entry = store.rebalance_board(ids.board)
        assert entry.details.keys == ((ids.b, Decimal('1')), (ids.a, Decimal('2')))
        assert store.rebalance_board(ids.board) is None


def test_serialized_lock_is_per_board(store):
    with store.serialized('1'):
        with store.serialized('2'):
            pass


class TestMemoryAtomic:

    def test_failed_block_restores_touched_records(self, store, repo, ids):
        with pytest.raises(RuntimeError):
            with repo.atomic():
                store.move_card(ids.b1, ids.a, after_card_id=ids.a1)
                store.create_card(ids.b, 'novo')
                raise RuntimeError('falhou')

        assert order(repo, ids.a) == [ids.a1, ids.a2, ids.a3]
        assert order(repo, ids.b) == [ids.b1]
        assert repo.read_column(ids.a).version == repo.read_column(ids.b).version == 0

    def test_deleted_column_comes_back(self, store, repo, ids):
        empty = repo.add_column(ids.board, 'vazia')
        with pytest.raises(RuntimeError):
            with repo.atomic():
                store.delete_column(empty)
                raise RuntimeError('falhou')

        assert repo.read_board(ids.board).column_ids() == [ids.a, ids.b, empty]

    def test_only_written_records_are_journaled(self, store, repo, ids):
        with repo.atomic():
            store.move_card(ids.a3, ids.a, after_card_id=None)
            assert set(repo._journal) == {('columns', ids.a), ('cards', ids.a3)}
        assert repo._journal is None
