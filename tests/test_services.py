"""BoardSyncEngine de ponta a ponta (modo memória)."""

import threading
from decimal import Decimal

import pytest
from django.core.exceptions import ImproperlyConfigured

from apps.board.exceptions import (
    ChangeLogAppendError,
    InvalidMoveTarget,
    OrderingConflict,
    PersistenceUnavailable,
)
from apps.board.notifications import NotificationKind
from apps.board.positions import Neighborhood
from apps.board.reconciler import BoardShadow
from apps.board.services import BoardSyncEngine, build_engine


def layout(engine, board_id):
    return BoardShadow.from_state(engine.board_state(board_id)).layout()


def replayed(initial, entries):
    """Estado inicial com as entradas aplicadas em ordem"""
    shadow = BoardShadow.from_state(initial)
    for entry in entries:
        shadow.apply(entry)
    return shadow.layout()


class TestOrderingProperties:

    def test_move_after_predecessor_updates_key_only(self, engine, repo, ids):
        initial = engine.board_state(ids.board)
        column = engine.create_column(ids.board, 'C').affected_entity_id
        a = engine.create_card(column, 'A').affected_entity_id
        b = engine.create_card(column, 'B').affected_entity_id

        entry = engine.move_card(b, column, after_card_id=a)

        assert entry.after_key > Decimal('1.0')
        assert repo.read_column(column).card_ids() == [a, b]
        assert replayed(initial, engine.read_since(ids.board, 0))[column] == [a, b]

    def test_concurrent_moves_with_same_token(self, engine, ids):
        token = Neighborhood(ids.a1, Decimal('1'), ids.a2, Decimal('2'))
        barrier = threading.Barrier(2)
        outcomes = []

        def move(card_id):
            barrier.wait()
            try:
                engine.move_card(card_id, ids.a, after_card_id=ids.a1, expected_version=token)
                outcomes.append('ok')
            except OrderingConflict:
                outcomes.append('conflict')

        threads = [threading.Thread(target=move, args=(c,)) for c in (ids.a3, ids.b1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ['conflict', 'ok']
        assert engine.changelog.last_sequence(ids.board) == 1

    def test_wire_token_is_accepted(self, engine, ids):
        token = {'lowerId': ids.a1, 'lowerKey': '1', 'upperId': ids.a2, 'upperKey': '2.0000000000'}
        entry = engine.move_card(ids.b1, ids.a, ids.a1, expected_version=token)
        assert entry.sequence_number == 1

    def test_insert_between_exhausted_keys_rebalances(self, engine, repo, ids):
        column = repo.add_column(ids.board, 'Apertada', column_id='400')
        x = repo.add_card(column, 'x', key='1.0', card_id='401')
        y = repo.add_card(column, 'y', key='1.0000000001', card_id='402')
        z = repo.add_card(column, 'z', key='1.0000000002', card_id='403')
        initial = engine.board_state(ids.board)

        entry = engine.create_card(column, 'novo', after_card_id=y)
        new = entry.affected_entity_id

        assert repo.read_column(column).cards == (
            (x, Decimal('1')), (y, Decimal('2')), (new, Decimal('3')), (z, Decimal('4')),
        )
        assert replayed(initial, [entry])[column] == [x, y, new, z]

    def test_every_subscriber_sees_the_authoritative_order(self, engine, ids, make_collector):
        initial = engine.board_state(ids.board)
        early = make_collector()
        engine.subscribe(ids.board, 'early', early)

        engine.move_card(ids.a1, ids.b)
        engine.move_column(ids.b, ids.board, None)
        engine.create_card(ids.b, 'novo', after_card_id=None)
        engine.move_card(ids.a3, ids.a, None)
        engine.rebalance_column(ids.b)

        late = make_collector()
        engine.subscribe(ids.board, 'late', late)

        expected = layout(engine, ids.board)
        for deliver in (early, late):
            assert replayed(initial, deliver.received) == expected

    def test_late_subscriber_gets_history_before_live(self, engine, ids, make_collector):
        engine.move_card(ids.a1, ids.b)
        engine.move_card(ids.a2, ids.b)
        engine.move_card(ids.a3, ids.b)
        deliver = make_collector()

        engine.subscribe(ids.board, 'late', deliver, from_sequence=0)
        assert [e.sequence_number for e in deliver.received] == [1, 2, 3]

        engine.move_card(ids.b1, ids.a)
        assert [e.sequence_number for e in deliver.received] == [1, 2, 3, 4]


class TestFailures:

    def test_invalid_target_is_not_retried(self, engine, ids, sleeps):
        with pytest.raises(InvalidMoveTarget):
            engine.move_card(ids.a1, '999')
        assert sleeps == []
        assert engine.changelog.last_sequence(ids.board) == 0

    def test_persistence_recovers_within_retries(self, engine, repo, ids, sleeps):
        calls = []
        original = repo.locate_column

        def flaky(column_id):
            calls.append(column_id)
            if len(calls) < 3:
                raise PersistenceUnavailable('timeout')
            return original(column_id)

        repo.locate_column = flaky
        entry = engine.move_card(ids.a1, ids.b)

        assert entry.sequence_number == 1
        assert sleeps == [0.01, 0.02]

    def test_changelog_failure_rolls_back_mutation(self, engine, repo, ids):
        engine.changelog.available = False
        with pytest.raises(ChangeLogAppendError):
            engine.move_card(ids.a1, ids.b)
        engine.changelog.available = True

        assert repo.read_column(ids.a).card_ids() == [ids.a1, ids.a2, ids.a3]
        assert repo.read_column(ids.a).version == 0

    def test_board_state_for_unknown_board(self, engine):
        with pytest.raises(InvalidMoveTarget):
            engine.board_state('999')


class TestCardAttributes:

    def test_assign_notifies_and_is_idempotent(self, engine, ids):
        entry = engine.assign_card(ids.a1, added=['11', '12', '99'], actor_user_id='10')

        assert entry.details.added == ('11', '12')
        assert engine.unread_count('11') == 1
        assert engine.assign_card(ids.a1, added=['11'], actor_user_id='10') is None

        engine.assign_card(ids.a1, removed=['12'], actor_user_id='10')
        [latest], _ = engine.list_notifications('12', page=1, limit=1)
        assert latest.kind is NotificationKind.CARD_UNASSIGNED

    def test_comment_mentions(self, engine, ids):
        engine.assign_card(ids.a1, added=['12'], actor_user_id='10')
        entry = engine.add_comment(ids.a1, 'ok @bia, veja @card', author_id='10')

        assert set(entry.details.mentioned_user_ids) == {'11', '12'}
        assert entry.details.excerpt.startswith('ok @bia')
        kinds = {n.kind for n in engine.list_notifications('12')[0]}
        assert kinds == {NotificationKind.CARD_ASSIGNED, NotificationKind.COMMENT_MENTION}
        assert engine.unread_count('10') == 0

    def test_due_date_notifies_assignees(self, engine, ids):
        engine.assign_card(ids.a1, added=['11'], actor_user_id='10')
        entry = engine.set_due_date(ids.a1, '2026-11-30', actor_user_id='10')

        assert entry.details.due_date == '2026-11-30'
        assert entry.details.previous_due_date is None
        assert engine.set_due_date(ids.a1, '2026-11-30') is None
        assert engine.unread_count('11') == 2

        with pytest.raises(ValueError):
            engine.set_due_date(ids.a1, '30/11/2026')

    def test_attribute_entries_do_not_touch_order(self, engine, ids):
        initial = engine.board_state(ids.board)
        engine.assign_card(ids.a1, added=['11'])
        engine.add_comment(ids.a1, 'texto', author_id='10')

        entries = engine.read_since(ids.board, 0)
        assert not any(entry.is_ordering for entry in entries)
        assert replayed(initial, entries) == layout(engine, ids.board)

    def test_reprocessing_entries_does_not_duplicate_notifications(self, engine, ids):
        entry = engine.assign_card(ids.a1, added=['11'], actor_user_id='10')
        engine.fanout.process(entry)
        engine.fanout.process(entry)
        assert engine.list_notifications('11')[1] == 1

    def test_notifications_are_pushed_to_user_listeners(self, engine, ids):
        received = []
        engine.add_user_listener('11', 'aba-1', received.append)
        engine.assign_card(ids.a1, added=['11'], actor_user_id='10')
        engine.remove_user_listener('11', 'aba-1')

        assert [p['kind'] for p in received] == ['card_assigned']

    def test_notification_user_operations(self, engine, ids):
        engine.assign_card(ids.a1, added=['11'], actor_user_id='10')
        engine.assign_card(ids.a2, added=['11'], actor_user_id='10')
        items, total = engine.list_notifications('11')
        assert total == 2

        engine.mark_as_read('11', items[0].id)
        assert engine.unread_count('11') == 1
        assert engine.mark_all_as_read('11') == 1
        engine.delete_notification('11', items[1].id)
        assert engine.list_notifications('11')[1] == 1


def test_lifecycle(repo, directory):
    from apps.board.changelog import ChangeLog
    from apps.board.notifications import MemoryInbox

    engine = BoardSyncEngine(repo, ChangeLog(), MemoryInbox(), directory)
    with pytest.raises(RuntimeError):
        engine.subscribe('1', 's', print)

    assert engine.start() is engine
    assert engine.running
    engine.shutdown()
    assert not engine.running


def test_build_engine_from_config():
    engine = build_engine({'STORAGE': 'memory', 'RELAY': 'local', 'POSITION_DECIMALS': 4})
    assert engine.store.space.decimals == 4
    assert engine.broadcaster.relay is None

    with pytest.raises(ImproperlyConfigured):
        build_engine({'STORAGE': 'redis'})
    with pytest.raises(ImproperlyConfigured):
        build_engine({'STORAGE': 'memory', 'RELAY': 'pombo'})
