"""
Tests for recurring_kernel.domain.distributor.

The distributor must spend the budget exactly: no unit lost, none created,
for any positive budget and order count.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from recurring_kernel.domain.distributor import (
    amount_for_order,
    distribute,
    remaining_budget,
)

budgets = st.integers(min_value=1, max_value=2**256 - 1)
counts = st.integers(min_value=1, max_value=500)


class TestAmountForOrder:
    def test_remainder_goes_to_earliest_orders(self):
        assert distribute(100, 3) == (34, 33, 33)

    def test_even_split(self):
        assert distribute(90, 3) == (30, 30, 30)

    def test_budget_smaller_than_count(self):
        assert distribute(2, 5) == (1, 1, 0, 0, 0)

    def test_single_order(self):
        assert amount_for_order(7, 1, 0) == 7

    @pytest.mark.parametrize("index", [-1, 3])
    def test_index_out_of_range(self, index):
        with pytest.raises(ValueError):
            amount_for_order(100, 3, index)

    @pytest.mark.parametrize(
        "budget,count",
        [(0, 3), (-1, 3), (100, 0), (True, 3), (100, False), (1.5, 2)],
    )
    def test_rejects_bad_terms(self, budget, count):
        with pytest.raises(ValueError):
            distribute(budget, count)


class TestRemainingBudget:
    def test_before_first_order(self):
        assert remaining_budget(100, 3, 0) == 100

    def test_after_first_order(self):
        assert remaining_budget(100, 3, 1) == 66

    def test_after_last_order(self):
        assert remaining_budget(100, 3, 3) == 0

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            remaining_budget(100, 3, 4)


class TestDistributionProperties:
    @given(budget=budgets, count=counts)
    def test_sum_is_exact(self, budget, count):
        assert sum(distribute(budget, count)) == budget

    @given(budget=budgets, count=counts)
    def test_amounts_differ_by_at_most_one(self, budget, count):
        amounts = distribute(budget, count)
        assert max(amounts) - min(amounts) <= 1

    @given(budget=budgets, count=counts)
    def test_non_increasing(self, budget, count):
        amounts = distribute(budget, count)
        assert all(a >= b for a, b in zip(amounts, amounts[1:]))

    @given(budget=budgets, count=counts, data=st.data())
    def test_remaining_matches_tail(self, budget, count, data):
        done = data.draw(st.integers(min_value=0, max_value=count))
        assert remaining_budget(budget, count, done) == sum(distribute(budget, count)[done:])
