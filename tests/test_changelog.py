"""ChangeLog em memória: sequência, leitura e despacho aos listeners."""

import threading

import pytest

from apps.board.changelog import ChangeLog
from apps.board.events import CardDeleted, ChangeEntry, Operation
from apps.board.exceptions import ChangeLogAppendError


def draft(board_id='1', entity='101'):
    return ChangeEntry(
        board_id=board_id, operation=Operation.DELETE_CARD, affected_entity_id=entity,
        details=CardDeleted(column_id='100'),
    )


@pytest.fixture
def log():
    return ChangeLog()


def test_sequence_is_per_board_and_contiguous(log):
    assert [log.append(draft('1')).sequence_number for _ in range(3)] == [1, 2, 3]
    assert log.append(draft('2')).sequence_number == 1
    assert log.last_sequence('1') == 3
    assert log.last_sequence('9') == 0


def test_read_since(log):
    for n in range(5):
        log.append(draft(entity=str(n)))
    assert [e.sequence_number for e in log.read_since('1', 2)] == [3, 4, 5]
    assert [e.sequence_number for e in log.read_since('1', 0, limit=2)] == [1, 2]
    assert log.read_since('1', 5) == []
    assert log.read_since('nenhum') == []


def test_sequenced_entries_cannot_be_appended_again(log):
    entry = log.append(draft())
    with pytest.raises(ChangeLogAppendError):
        log.append(entry)


def test_unavailable_log_rejects_append(log):
    log.available = False
    with pytest.raises(ChangeLogAppendError):
        log.append(draft())
    assert log.last_sequence('1') == 0


def test_listeners_run_after_append_and_are_isolated(log):
    seen = []

    def broken(entry):
        raise RuntimeError('boom')

    log.add_listener(broken)
    log.add_listener(lambda entry: seen.append((entry.sequence_number, log.last_sequence('1'))))

    log.append(draft())
    assert seen == [(1, 1)]

    log.remove_listener(broken)
    log.append(draft())
    assert seen[-1] == (2, 2)


def test_concurrent_appends_get_unique_numbers(log):
    def worker():
        for _ in range(50):
            log.append(draft())

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    numbers = [e.sequence_number for e in log.read_since('1')]
    assert numbers == list(range(1, 201))
