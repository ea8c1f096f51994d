"""
Tests for the amortization engine: rounding, forward amortization, the
prepayment window and both rescheduling scenarios.

Small loans (1000 at 12% a year, i.e. 1% a month) keep every figure
checkable by hand.
"""

import math

import pytest

from loan_prepay.config import AMORTIZE_MAX_MONTHS
from loan_prepay.calculator import (
    ACTION_EMI,
    ACTION_PREPAY,
    ACTION_PREPAY_AFTER_PAID,
    LoanInput,
    LoanInputError,
    NonAmortizingEmiError,
    OfficialRow,
    Prepayment,
    ScheduleRow,
    amortize_until_paid,
    compute_emi,
    derive_start_outstanding,
    keep_emi_plan,
    merge_prepayments,
    monthly_rate,
    original_remaining_interest,
    reduce_emi_plan,
    reschedule,
    round_currency,
    simulate_prepayments,
)

RATE = monthly_rate(12)


def bank_loan(**overrides):
    params = dict(principal=3_200_000, annual_rate=8.35, emi=31_231, total_tenure=180, paid_emis=4)
    params.update(overrides)
    return LoanInput(**params)


class TestRounding:
    """Currency rounding is half-up, not banker's rounding"""

    def test_halves_round_up(self):
        assert round_currency(2.5) == 3
        assert round_currency(3.5) == 4
        assert round_currency(0.5) == 1

    def test_below_half_rounds_down(self):
        assert round_currency(2.4999) == 2
        assert round_currency(10.0) == 10

    def test_negative_half_rounds_toward_positive(self):
        assert round_currency(-2.5) == -2

    def test_monthly_rate(self):
        assert monthly_rate(12) == pytest.approx(0.01)
        assert monthly_rate(8.35) == pytest.approx(0.0069583333)


class TestAmortizeUntilPaid:

    def test_hand_computed_schedule(self):
        rows = amortize_until_paid(1000, RATE, 300)

        assert rows == [
            ScheduleRow(1, 300, 290, 10, 710),
            ScheduleRow(2, 300, 293, 7, 417),
            ScheduleRow(3, 300, 296, 4, 121),
            ScheduleRow(4, 122, 121, 1, 0),
        ]

    def test_last_month_pays_only_what_remains(self):
        last = amortize_until_paid(1000, RATE, 300)[-1]
        assert last.principal == 121
        assert last.emi_paid == last.principal + last.interest

    def test_cap_stops_the_schedule(self):
        rows = amortize_until_paid(1000, RATE, 300, max_months=2)
        assert len(rows) == 2
        assert rows[-1].remaining == 417

    def test_emi_below_interest_is_fatal(self):
        with pytest.raises(NonAmortizingEmiError):
            amortize_until_paid(1000, RATE, 10)

    def test_zero_balance_gives_empty_schedule(self):
        assert amortize_until_paid(0, RATE, 300) == []

    def test_balance_invariants_on_bank_loan(self):
        rows = amortize_until_paid(3_164_000, monthly_rate(8.35), 31_231)

        previous = 3_164_000
        for row in rows:
            assert row.remaining >= 0
            assert row.remaining <= previous
            assert previous - row.principal == row.remaining
            assert row.principal + row.interest == row.emi_paid
            previous = row.remaining
        assert rows[-1].remaining == 0

    def test_each_call_is_a_fresh_simulation(self):
        assert amortize_until_paid(1000, RATE, 300) == amortize_until_paid(1000, RATE, 300)


class TestComputeEmi:

    def test_annuity_installment(self):
        assert compute_emi(1000, RATE, 4) == 256
        assert compute_emi(1000, RATE, 12) == 89

    def test_no_months_left(self):
        assert compute_emi(1000, RATE, 0) == 0
        assert compute_emi(1000, RATE, -3) == 0

    def test_zero_rate_splits_evenly(self):
        assert compute_emi(1000, 0, 3) == 333


class TestMergePrepayments:

    def test_same_month_amounts_are_summed(self):
        plan = merge_prepayments([Prepayment(3, 100), Prepayment(3, 50), Prepayment(5, 20)])
        assert plan == {3: 150, 5: 20}

    def test_invalid_entries_are_dropped(self):
        plan = merge_prepayments([
            Prepayment(0, 10),
            Prepayment(2, -5),
            Prepayment(2, 0),
            {"month": "abc", "amount": 10},
            {"month": 2.5, "amount": 10},
            {"month": None, "amount": 10},
            {"month": 4, "amount": "lots"},
        ])
        assert plan == {}

    def test_numeric_strings_are_accepted(self):
        assert merge_prepayments([{"month": "3", "amount": "100"}]) == {3: 100.0}

    def test_plan_is_ordered_by_month(self):
        plan = merge_prepayments([Prepayment(9, 1), Prepayment(2, 1), Prepayment(5, 1)])
        assert list(plan) == [2, 5, 9]

    def test_empty(self):
        assert merge_prepayments([]) == {}
        assert merge_prepayments(None) == {}


class TestStartOutstanding:

    def test_replays_paid_emis_from_principal(self):
        loan = LoanInput(principal=1000, annual_rate=12, emi=300, total_tenure=4, paid_emis=2)
        assert derive_start_outstanding(loan) == 417

    def test_nothing_paid_yet(self):
        loan = LoanInput(principal=1000, annual_rate=12, emi=300, total_tenure=4, paid_emis=0)
        assert derive_start_outstanding(loan) == 1000

    def test_official_schedule_row_is_used(self):
        loan = LoanInput(principal=None, annual_rate=12, emi=300, total_tenure=4, paid_emis=2)
        schedule = [OfficialRow(705), OfficialRow(410), OfficialRow(120), OfficialRow(0)]
        assert derive_start_outstanding(loan, schedule) == 410

    def test_official_schedule_with_nothing_paid_prefers_principal(self):
        schedule = [OfficialRow(705), OfficialRow(410)]
        with_principal = LoanInput(principal=1000, annual_rate=12, emi=300, total_tenure=4, paid_emis=0)
        without = LoanInput(principal=None, annual_rate=12, emi=300, total_tenure=4, paid_emis=0)

        assert derive_start_outstanding(with_principal, schedule) == 1000
        assert derive_start_outstanding(without, schedule) == 705

    def test_short_official_schedule_falls_back_to_principal(self):
        loan = LoanInput(principal=1000, annual_rate=12, emi=300, total_tenure=4, paid_emis=3)
        assert derive_start_outstanding(loan, [OfficialRow(705)]) == 121

    def test_no_principal_and_no_schedule(self):
        loan = LoanInput(principal=None, annual_rate=12, emi=300, total_tenure=4, paid_emis=2)
        with pytest.raises(LoanInputError):
            derive_start_outstanding(loan)


class TestSimulatePrepayments:

    def test_emi_then_prepayment(self):
        sim = simulate_prepayments(710, RATE, 300, 1, {2: 100})

        assert [e.action for e in sim.events] == [ACTION_EMI, ACTION_PREPAY]
        emi, prepay = sim.events
        assert (emi.month, emi.interest, emi.principal, emi.remaining_after_emi) == (2, 7, 293, 417)
        assert (prepay.month, prepay.before, prepay.remaining_after_prepay) == (2, 417, 317)
        assert sim.outstanding == 317
        assert sim.end_month == 2

    def test_prepayment_larger_than_balance_clips_at_zero(self):
        sim = simulate_prepayments(710, RATE, 300, 1, {2: 5000})
        assert sim.events[-1].remaining_after_prepay == 0
        assert sim.outstanding == 0

    def test_prepayment_at_paid_emis_is_applied_first(self):
        sim = simulate_prepayments(710, RATE, 300, 1, {1: 10, 2: 100})

        assert [e.action for e in sim.events] == [ACTION_PREPAY_AFTER_PAID, ACTION_EMI, ACTION_PREPAY]
        retro = sim.events[0]
        assert (retro.month, retro.before, retro.remaining_after_prepay) == (1, 710, 700)
        assert sim.events[1].remaining_after_emi == 407
        assert sim.outstanding == 307
        assert [e.seq for e in sim.events] == [0, 1, 2]

    def test_window_stops_once_the_loan_is_cleared(self):
        sim = simulate_prepayments(710, RATE, 300, 1, {2: 5000, 50: 10})
        assert [e.action for e in sim.events] == [ACTION_EMI, ACTION_PREPAY]
        assert sim.outstanding == 0
        assert sim.end_month == 50

    def test_prepayment_beyond_simulation_cap_is_rejected(self):
        with pytest.raises(LoanInputError):
            simulate_prepayments(710, RATE, 300, 1, {2_000_000: 1})

    def test_no_prepayments_means_no_window(self):
        sim = simulate_prepayments(710, RATE, 300, 1, {})
        assert sim.events == []
        assert sim.outstanding == 710
        assert sim.end_month == 1

    def test_prepayments_before_paid_emis_are_ignored(self):
        sim = simulate_prepayments(710, RATE, 300, 3, {2: 100})
        assert sim.events == []
        assert sim.outstanding == 710
        assert sim.end_month == 3


class TestKeepEmiPlan:

    def test_months_and_interest(self):
        plan = keep_emi_plan(1000, RATE, 300)
        assert plan.months_to_finish == 4
        assert len(plan.schedule) == 4
        assert plan.total_interest == 22
        assert not plan.unbounded

    def test_emi_below_interest_is_unbounded(self):
        plan = keep_emi_plan(1000, RATE, 5)
        assert plan.unbounded
        assert math.isinf(plan.total_interest)
        assert plan.schedule == []
        assert plan.error is None

    def test_zero_rate(self):
        plan = keep_emi_plan(1000, 0, 300)
        assert plan.months_to_finish == 4
        assert plan.total_interest == 0
        assert plan.schedule[-1].emi_paid == 100

    def test_cleared_balance(self):
        plan = keep_emi_plan(0, RATE, 300)
        assert plan.months_to_finish == 0
        assert plan.schedule == []

    def test_zero_rate_payoff_beyond_cap_is_unbounded(self):
        plan = keep_emi_plan(5_000_000, 0.0, 1)
        assert plan.unbounded
        assert math.isinf(plan.total_interest)
        assert plan.schedule == []

    def test_tiny_rate_payoff_beyond_cap_is_unbounded(self):
        plan = keep_emi_plan(1_000_000, monthly_rate(0.0001), 100)
        assert plan.unbounded
        assert plan.schedule == []

    def test_payoff_right_at_cap_is_scheduled(self):
        plan = keep_emi_plan(300_000, 0.0, 300)
        assert plan.months_to_finish == AMORTIZE_MAX_MONTHS
        assert len(plan.schedule) == AMORTIZE_MAX_MONTHS
        assert plan.schedule[-1].remaining == 0


class TestReduceEmiPlan:

    def test_schedule_is_truncated_to_remaining_tenure(self):
        plan = reduce_emi_plan(1000, RATE, total_tenure=10, months_done=6)

        assert plan.new_emi == 256
        assert len(plan.remaining_schedule) == 4
        assert plan.remaining_schedule[-1].remaining == 2
        assert plan.total_interest == 26

    def test_nearly_cleared_balance_rounds_emi_down_to_interest(self):
        plan = reduce_emi_plan(60, RATE, total_tenure=200, months_done=0)
        assert plan.new_emi == 1
        assert plan.error == "EMI too small to cover interest."
        assert plan.remaining_schedule == []

    def test_past_nominal_tenure(self):
        plan = reduce_emi_plan(1000, RATE, total_tenure=10, months_done=10)
        assert plan.new_emi == 0
        assert plan.remaining_schedule == []
        assert plan.total_interest == 0


class TestReschedule:
    """End-to-end runs on a 3.2M, 8.35%, 180-month loan with 4 EMIs paid"""

    def test_without_prepayments(self):
        loan = bank_loan()
        result = reschedule(loan, [])

        assert result.sim_log == []
        assert result.outstanding_after_prepayments == derive_start_outstanding(loan)
        assert 175 <= result.keep_emi.months_to_finish <= 177
        assert abs(result.reduce_emi.new_emi - loan.emi) <= 2

    def test_keep_emi_matches_plain_amortization_without_prepayments(self):
        loan = bank_loan()
        result = reschedule(loan, [])
        plain = amortize_until_paid(result.outstanding_after_prepayments, monthly_rate(loan.annual_rate), loan.emi)

        assert result.keep_emi.schedule == plain
        assert result.interest_saved_keep_emi == 0

    def test_prepayment_after_twelfth_emi(self):
        base = reschedule(bank_loan(), [])
        result = reschedule(bank_loan(), [Prepayment(12, 200_000)])

        emis = [e for e in result.sim_log if e.action == ACTION_EMI]
        assert [e.month for e in emis] == list(range(5, 13))
        prepay = result.sim_log[-1]
        assert prepay.action == ACTION_PREPAY
        assert prepay.month == 12
        assert prepay.before == emis[-1].remaining_after_emi
        assert prepay.remaining_after_prepay == prepay.before - 200_000
        assert result.outstanding_after_prepayments == prepay.remaining_after_prepay
        assert result.keep_emi.months_to_finish < base.keep_emi.months_to_finish
        assert result.interest_saved_keep_emi > 0
        assert result.interest_saved_reduce_emi > 0

    def test_reduce_emi_uses_tenure_left_after_the_window(self):
        result = reschedule(bank_loan(), [Prepayment(12, 200_000)])
        assert len(result.reduce_emi.remaining_schedule) <= 180 - 12
        assert result.reduce_emi.new_emi < 31_231

    def test_prepayment_right_after_paid_emis(self):
        loan = bank_loan()
        start = derive_start_outstanding(loan)
        result = reschedule(loan, [Prepayment(4, 500_000)])

        assert len(result.sim_log) == 1
        event = result.sim_log[0]
        assert event.action == ACTION_PREPAY_AFTER_PAID
        assert event.before == start
        assert event.remaining_after_prepay == start - 500_000
        assert result.outstanding_after_prepayments == start - 500_000

    def test_retroactive_prepayment_heads_the_log(self):
        result = reschedule(bank_loan(), [Prepayment(8, 50_000), Prepayment(4, 500_000)])
        actions = [e.action for e in result.sim_log]
        assert actions[0] == ACTION_PREPAY_AFTER_PAID
        assert actions[1:] == [ACTION_EMI] * 4 + [ACTION_PREPAY]

    def test_emi_below_interest_fails_only_keep_emi(self):
        loan = LoanInput(principal=1000, annual_rate=12, emi=5, total_tenure=12, paid_emis=0)
        result = reschedule(loan, [])

        assert result.keep_emi.unbounded
        assert result.reduce_emi.new_emi == 89
        assert result.reduce_emi.error is None
        assert len(result.reduce_emi.remaining_schedule) == 12
        assert result.original_remaining_interest is None
        assert result.interest_saved_keep_emi is None
        assert result.interest_saved_reduce_emi is None

    def test_official_schedule_baseline(self):
        loan = LoanInput(principal=None, annual_rate=12, emi=300, total_tenure=4, paid_emis=2)
        official = [OfficialRow(710, 10), OfficialRow(417, 7), OfficialRow(121, 4), OfficialRow(0, 1)]
        result = reschedule(loan, [], official)

        assert result.start_outstanding == 417
        assert result.original_remaining_interest == 5
        assert result.keep_emi.months_to_finish == 2
        assert result.keep_emi.total_interest == 5
        assert result.interest_saved_keep_emi == 0
        assert result.reduce_emi.new_emi == 212
        assert result.reduce_emi.total_interest == 6
        assert result.interest_saved_reduce_emi == -1

    def test_baseline_beyond_cap_is_unavailable(self):
        loan = LoanInput(principal=1_000_000, annual_rate=0, emi=500, total_tenure=180, paid_emis=0)
        assert original_remaining_interest(1_000_000, 0.0, loan) is None

        result = reschedule(loan, [])
        assert result.original_remaining_interest is None
        assert result.interest_saved_keep_emi is None
        assert result.interest_saved_reduce_emi is None
        assert result.keep_emi.unbounded
        assert result.reduce_emi.new_emi == 5556

    def test_far_future_prepayment_is_rejected(self):
        with pytest.raises(LoanInputError):
            reschedule(bank_loan(), [Prepayment(2_000_000, 1)])

    def test_is_idempotent(self):
        prepayments = [Prepayment(12, 200_000), Prepayment(30, 75_000), Prepayment(12, 1_000)]
        assert reschedule(bank_loan(), prepayments) == reschedule(bank_loan(), prepayments)

    @pytest.mark.parametrize("emi", [0, -100])
    def test_non_positive_emi_is_rejected(self, emi):
        with pytest.raises(LoanInputError):
            reschedule(bank_loan(emi=emi), [])

    def test_missing_principal_and_schedule_is_rejected(self):
        with pytest.raises(LoanInputError):
            reschedule(bank_loan(principal=None), [])
