"""Chaves de posição, vizinhança e rebalanceamento."""

from decimal import Decimal

import pytest

from apps.board.exceptions import PrecisionExhausted
from apps.board.positions import (
    Neighborhood,
    PositionSpace,
    format_key,
    insert_after,
    neighborhood_of,
    parse_key,
    sort_siblings,
)


@pytest.fixture
def space():
    return PositionSpace()


class TestKeyBetween:

    def test_empty_list_gets_step(self, space):
        assert space.key_between() == Decimal('1')

    def test_before_first(self, space):
        assert space.key_between(None, '1') == Decimal('0')

    def test_after_last(self, space):
        assert space.key_between('3', None) == Decimal('4')

    def test_midpoint_is_strictly_between(self, space):
        key = space.key_between('1', '2')
        assert Decimal('1') < key < Decimal('2')
        assert key == Decimal('1.5')

    def test_repeated_halving_stays_ordered(self, space):
        lower, upper = Decimal('1'), Decimal('2')
        for _ in range(20):
            key = space.key_between(lower, upper)
            assert lower < key < upper
            upper = key

    def test_precision_exhausted_between_adjacent_quanta(self, space):
        with pytest.raises(PrecisionExhausted) as exc:
            space.key_between('1.0', '1.0000000001')
        assert exc.value.lower == Decimal('1.0')

    def test_out_of_order_neighbors_rejected(self, space):
        with pytest.raises(ValueError):
            space.key_between('2', '1')

    def test_custom_step_and_decimals(self):
        space = PositionSpace(step='1024', decimals=2)
        assert space.key_between() == Decimal('1024')
        with pytest.raises(PrecisionExhausted):
            space.key_between('1.00', '1.01')


def test_spread_and_rebalance_preserve_order(space):
    assert space.spread(3) == [Decimal('1'), Decimal('2'), Decimal('3')]
    assert space.rebalance(['c', 'a', 'b']) == [
        ('c', Decimal('1')), ('a', Decimal('2')), ('b', Decimal('3')),
    ]


def test_is_balanced(space):
    assert space.is_balanced([('a', '1'), ('b', '2')])
    assert not space.is_balanced([('a', '1'), ('b', '1.5')])
    assert space.is_balanced([])


def test_sort_siblings_breaks_ties_by_id():
    pairs = sort_siblings([('b', '1'), ('a', '1'), (3, '0.5')])
    assert pairs == [('3', Decimal('0.5')), ('a', Decimal('1')), ('b', Decimal('1'))]


def test_parse_and_format_key():
    assert parse_key(None) is None
    assert parse_key('') is None
    assert parse_key(1.5) == Decimal('1.5')
    assert format_key(Decimal('1E-10')) == '0.0000000001'
    with pytest.raises(ValueError):
        parse_key('abc')


class TestNeighborhood:

    siblings = [('a', Decimal('1')), ('b', Decimal('2')), ('c', Decimal('3'))]

    def test_top(self):
        assert neighborhood_of(self.siblings, None) == Neighborhood(None, None, 'a', Decimal('1'))

    def test_after_last(self):
        assert neighborhood_of(self.siblings, 'c') == Neighborhood('c', Decimal('3'), None, None)

    def test_moving_item_is_ignored(self):
        result = neighborhood_of(self.siblings, 'a', moving_id='b')
        assert result == Neighborhood('a', Decimal('1'), 'c', Decimal('3'))

    def test_unknown_after_id(self):
        with pytest.raises(KeyError):
            neighborhood_of(self.siblings, 'z')

    def test_dict_round_trip_compares_keys_by_value(self):
        token = Neighborhood('a', Decimal('1.0000000000'), 'b', Decimal('2'))
        data = token.to_dict()
        assert data == {
            'lowerId': 'a', 'lowerKey': '1.0000000000', 'upperId': 'b', 'upperKey': '2',
        }
        assert Neighborhood.from_dict(data) == Neighborhood('a', Decimal('1'), 'b', Decimal('2'))
        assert Neighborhood.from_dict(None) is None


def test_insert_after():
    assert insert_after(['a', 'b', 'c'], 'c', None) == ['c', 'a', 'b']
    assert insert_after(['a', 'b', 'c'], 'a', 'b') == ['b', 'a', 'c']
    assert insert_after(['a', 'b'], 'x', 'b') == ['a', 'b', 'x']
