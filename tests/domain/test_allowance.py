"""
Tests for recurring_kernel.domain.allowance.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from recurring_kernel.domain.allowance import (
    ApprovalMode,
    plan_approval,
    query_allowance,
)
from recurring_kernel.exceptions import ChainQueryError


class TestPlanApproval:
    def test_sufficient_allowance_needs_no_approval(self):
        assert plan_approval(50, 50, spender="0xrouter", token="0xusdc") is None

    def test_short_allowance_approves_exact_amount(self):
        step = plan_approval(10, 34, spender="0xrouter", token="0xusdc")
        assert step.amount == 34
        assert step.spender == "0xrouter"
        assert step.token == "0xusdc"
        assert step.current_allowance == 10

    def test_remaining_budget_mode(self):
        step = plan_approval(
            0, 34, spender="0xrouter", token="0xusdc",
            mode=ApprovalMode.REMAINING_BUDGET, remaining_budget=100,
        )
        assert step.amount == 100

    def test_remaining_budget_never_below_required(self):
        step = plan_approval(
            0, 34, spender="0xrouter", token="0xusdc",
            mode=ApprovalMode.REMAINING_BUDGET, remaining_budget=10,
        )
        assert step.amount == 34

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValueError):
            plan_approval(-1, 5, spender="0xrouter", token="0xusdc")

    @given(
        allowance=st.integers(min_value=0, max_value=10**30),
        required=st.integers(min_value=0, max_value=10**30),
    )
    def test_approval_iff_short(self, allowance, required):
        step = plan_approval(allowance, required, spender="s", token="t")
        if allowance >= required:
            assert step is None
        else:
            assert step is not None and step.amount >= required


class _Chain:
    def __init__(self, answer=None, error=None):
        self.answer = answer
        self.error = error

    def allowance(self, chain_id, owner, spender, token):
        if self.error is not None:
            raise self.error
        return self.answer


class TestQueryAllowance:
    def test_returns_chain_answer(self):
        assert query_allowance(_Chain(answer=42), "ethereum", "0xvault", "0xrouter", "0xusdc") == 42

    def test_transport_failure_is_chain_error(self):
        with pytest.raises(ChainQueryError) as exc_info:
            query_allowance(_Chain(error=TimeoutError("rpc timeout")), "ethereum", "o", "s", "t")
        assert exc_info.value.operation == "allowance"
        assert exc_info.value.retryable is True
        assert "rpc timeout" in exc_info.value.reason

    @pytest.mark.parametrize("answer", [None, -1, "100", True, 1.0])
    def test_unusable_answer_is_never_treated_as_sufficient(self, answer):
        with pytest.raises(ChainQueryError):
            query_allowance(_Chain(answer=answer), "ethereum", "o", "s", "t")
