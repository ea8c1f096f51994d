from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging
import math

from loan_prepay.config import AMORTIZE_MAX_MONTHS, SCHEDULE_BUFFER_MONTHS


logger = logging.getLogger(__name__)

# Event actions as they appear in the simulation log
ACTION_EMI = "EMI"
ACTION_PREPAY = "PREPAY"
ACTION_PREPAY_AFTER_PAID = "PREPAY_AFTER_ALREADY_PAID_EMI"


class LoanInputError(ValueError):
    """The request cannot be simulated (no start balance, bad EMI ...)."""


class NonAmortizingEmiError(ValueError):
    """The EMI does not cover the month's interest, so the balance never falls."""


@dataclass
class LoanInput:
    """Loan parameters for one calculation.

    Fields:
        principal: original loan amount. Optional when an official schedule is supplied.
        annual_rate: annual rate in percent, e.g. 8.35.
        emi: fixed monthly installment.
        total_tenure: total number of EMIs over the loan's life.
        paid_emis: EMIs already paid (0 <= paid_emis <= total_tenure).
    """

    principal: Optional[float]
    annual_rate: float
    emi: float
    total_tenure: int
    paid_emis: int = 0


@dataclass
class Prepayment:
    """A lump sum applied right after EMI number ``month``."""

    month: int
    amount: float


@dataclass
class OfficialRow:
    """One row of a bank-issued schedule: outstanding after that EMI (and its interest, if known)."""

    outstanding: float
    interest: Optional[float] = None


@dataclass
class ScheduleRow:
    """One month of an amortization schedule.

    Fields:
        month: 1-based month index within the schedule.
        emi_paid: amount actually paid this month (interest + principal; the last
            month may be smaller than the nominal EMI).
        principal: principal component.
        interest: interest component.
        remaining: balance after this month, never negative.
    """

    month: int
    emi_paid: float
    principal: float
    interest: float
    remaining: float


@dataclass
class SimulationEvent:
    """One entry of the prepayment-window log.

    ``seq`` is the logical order of application; the log is sorted by it. EMI
    events fill ``emi_paid``/``interest``/``principal``/``remaining_after_emi``,
    prepayment events fill ``prepay_amount``/``before``/``remaining_after_prepay``.
    """

    seq: int
    month: int
    action: str
    emi_paid: Optional[float] = None
    interest: Optional[float] = None
    principal: Optional[float] = None
    remaining_after_emi: Optional[float] = None
    prepay_amount: Optional[float] = None
    before: Optional[float] = None
    remaining_after_prepay: Optional[float] = None


@dataclass
class PrepaymentSimulation:
    events: List[SimulationEvent]
    outstanding: float
    end_month: int


@dataclass
class KeepEmiPlan:
    """Scenario A: same EMI, shorter tenure.

    ``months_to_finish`` and ``total_interest`` are ``math.inf`` when the EMI
    cannot cover the interest on the reduced balance, or would need more
    than ``AMORTIZE_MAX_MONTHS`` months to clear it.
    """

    months_to_finish: float = 0
    schedule: List[ScheduleRow] = field(default_factory=list)
    total_interest: float = 0
    error: Optional[str] = None

    @property
    def unbounded(self) -> bool:
        return math.isinf(self.months_to_finish)


@dataclass
class ReduceEmiPlan:
    """Scenario B: same tenure, smaller EMI."""

    new_emi: float = 0
    remaining_schedule: List[ScheduleRow] = field(default_factory=list)
    total_interest: float = 0
    error: Optional[str] = None


@dataclass
class RescheduleResult:
    """Outcome of one reschedule request.

    Fields:
        start_outstanding: balance after ``paid_emis`` EMIs, before any prepayment.
        outstanding_after_prepayments: balance both scenarios start from.
        sim_log: EMI/prepayment events of the prepayment window, in logical order.
        keep_emi / reduce_emi: the two rescheduling scenarios.
        original_remaining_interest: interest still due under the unmodified plan,
            ``None`` when no baseline can be built.
        interest_saved_keep_emi / interest_saved_reduce_emi: baseline interest minus
            the scenario's interest (window EMIs included), ``None`` when unavailable.
    """

    start_outstanding: float
    outstanding_after_prepayments: float
    sim_log: List[SimulationEvent]
    keep_emi: KeepEmiPlan
    reduce_emi: ReduceEmiPlan
    original_remaining_interest: Optional[float] = None
    interest_saved_keep_emi: Optional[float] = None
    interest_saved_reduce_emi: Optional[float] = None


def round_currency(value: float) -> int:
    # Half-up to a whole currency unit, as bank statements do (2.5 -> 3), not banker's rounding.
    return int(math.floor(value + 0.5))


def monthly_rate(annual_rate: float) -> float:
    # Annual percent -> monthly fraction. 8.35 => 0.0069583...
    return annual_rate / 100.0 / 12.0


def _emi_step(balance: float, rate: float, emi: float):
    # One month: interest on the opening balance, the rest of the EMI goes to principal.
    interest = round_currency(balance * rate)
    principal = emi - interest
    if principal > balance:
        principal = balance
    return interest, principal, interest + principal, round_currency(balance - principal)


def amortize_until_paid(
    balance: float,
    rate: float,
    emi: float,
    max_months: int = AMORTIZE_MAX_MONTHS,
) -> List[ScheduleRow]:
    """Pay ``emi`` every month until the balance is cleared or ``max_months`` is reached.

    Raises NonAmortizingEmiError as soon as a month's interest eats the whole EMI.
    """
    rows: List[ScheduleRow] = []
    month = 0
    while balance > 0 and month < max_months:
        month += 1
        interest = round_currency(balance * rate)
        principal = emi - interest
        if principal <= 0:
            raise NonAmortizingEmiError("EMI too small to cover interest.")
        if principal > balance:
            principal = balance
        balance = round_currency(balance - principal)
        rows.append(ScheduleRow(month, interest + principal, principal, interest, max(balance, 0)))
    return rows


def compute_emi(balance: float, rate: float, months: int) -> int:
    # Standard annuity installment that clears ``balance`` in exactly ``months`` payments.
    if months <= 0:
        return 0
    if rate == 0:
        return round_currency(balance / months)
    factor = math.pow(1 + rate, months)
    return round_currency(balance * rate * factor / (factor - 1))


def _as_month(value) -> Optional[int]:
    try:
        month = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(month) or math.isinf(month) or month < 1 or month != int(month):
        return None
    return int(month)


def merge_prepayments(
    prepayments: Iterable[Union[Prepayment, Mapping[str, object]]],
) -> Dict[int, float]:
    """Reduce a prepayment list to ``{month: total amount}``.

    Amounts landing on the same month are summed. Entries with a non-positive
    amount or a month that is not a whole number >= 1 are dropped.
    """
    plan: Dict[int, float] = {}
    for item in prepayments or ():
        if isinstance(item, Mapping):
            raw_month, raw_amount = item.get("month"), item.get("amount")
        else:
            raw_month, raw_amount = item.month, item.amount
        month = _as_month(raw_month)
        try:
            amount = float(raw_amount)
        except (TypeError, ValueError):
            continue
        if month is None or not amount > 0:
            continue
        plan[month] = plan.get(month, 0) + amount
    return dict(sorted(plan.items()))


def derive_start_outstanding(
    loan: LoanInput,
    official_schedule: Optional[Sequence[OfficialRow]] = None,
) -> float:
    # Balance after ``paid_emis`` EMIs: read it off the bank schedule when we have one, else replay the EMIs.
    paid = loan.paid_emis
    if official_schedule and len(official_schedule) >= max(paid, 0):
        if paid == 0:
            if loan.principal is not None:
                return float(loan.principal)
            return float(official_schedule[0].outstanding)
        return float(official_schedule[paid - 1].outstanding)

    if loan.principal is None:
        raise LoanInputError("Provide either officialSchedule or principal + paidEmis to derive outstanding.")

    rate = monthly_rate(loan.annual_rate)
    outstanding = float(loan.principal)
    for _ in range(paid):
        outstanding = _emi_step(outstanding, rate, loan.emi)[3]
    return outstanding


def simulate_prepayments(
    outstanding: float,
    rate: float,
    emi: float,
    paid_emis: int,
    plan: Mapping[int, float],
) -> PrepaymentSimulation:
    """Walk month by month from ``paid_emis`` to the last planned prepayment, or until the loan is cleared.

    Each month pays one EMI, then that month's prepayment if any. A prepayment
    dated exactly ``paid_emis`` lands on the starting balance before any EMI and
    is logged first as PREPAY_AFTER_ALREADY_PAID_EMI.
    """
    events: List[SimulationEvent] = []
    seq = 0

    if plan.get(paid_emis):
        before = outstanding
        outstanding = max(0, round_currency(outstanding - plan[paid_emis]))
        events.append(SimulationEvent(
            seq=seq,
            month=paid_emis,
            action=ACTION_PREPAY_AFTER_PAID,
            prepay_amount=plan[paid_emis],
            before=before,
            remaining_after_prepay=outstanding,
        ))
        seq += 1

    stale = [m for m in plan if m < paid_emis]
    if stale:
        logger.debug("ignoring prepayments dated before paid EMIs: %s", stale)

    end_month = max([paid_emis, *plan.keys()])
    if end_month - paid_emis > AMORTIZE_MAX_MONTHS:
        raise LoanInputError(f"prepayment month {end_month} is more than {AMORTIZE_MAX_MONTHS} months after paidEmis")
    month = paid_emis
    while month < end_month and outstanding > 0:
        month += 1
        interest, principal, emi_paid, outstanding = _emi_step(outstanding, rate, emi)
        events.append(SimulationEvent(
            seq=seq,
            month=month,
            action=ACTION_EMI,
            emi_paid=emi_paid,
            interest=interest,
            principal=principal,
            remaining_after_emi=outstanding,
        ))
        seq += 1

        if plan.get(month):
            before = outstanding
            outstanding = max(0, round_currency(outstanding - plan[month]))
            events.append(SimulationEvent(
                seq=seq,
                month=month,
                action=ACTION_PREPAY,
                prepay_amount=plan[month],
                before=before,
                remaining_after_prepay=outstanding,
            ))
            seq += 1

    events.sort(key=lambda e: e.seq)
    return PrepaymentSimulation(events=events, outstanding=outstanding, end_month=end_month)


def keep_emi_plan(balance: float, rate: float, emi: float) -> KeepEmiPlan:
    # Scenario A: closed-form months to finish, then a schedule with a small buffer for rounding drift.
    plan = KeepEmiPlan()
    try:
        if rate == 0:
            plan.months_to_finish = math.ceil(balance / emi)
        else:
            denom = emi - balance * rate
            if denom <= 0:
                plan.months_to_finish = math.inf
                plan.total_interest = math.inf
                return plan
            plan.months_to_finish = math.ceil(math.log(emi / denom) / math.log(1 + rate))
        # Past the simulation cap counts as never finishing
        if plan.months_to_finish > AMORTIZE_MAX_MONTHS:
            logger.info("keep-EMI payoff needs %s months, over the %s cap", plan.months_to_finish, AMORTIZE_MAX_MONTHS)
            plan.months_to_finish = math.inf
            plan.total_interest = math.inf
            return plan
        max_months = min(plan.months_to_finish + SCHEDULE_BUFFER_MONTHS, AMORTIZE_MAX_MONTHS)
        plan.schedule = amortize_until_paid(balance, rate, emi, max_months)
        plan.total_interest = sum(row.interest for row in plan.schedule)
    except ValueError as e:
        logger.warning("keep-EMI scenario failed: %s", e)
        plan.error = str(e)
    return plan


def reduce_emi_plan(balance: float, rate: float, total_tenure: int, months_done: int) -> ReduceEmiPlan:
    # Scenario B: re-amortize over what is left of the nominal tenure.
    plan = ReduceEmiPlan()
    remaining = total_tenure - months_done
    if remaining <= 0:
        return plan
    try:
        # A nearly cleared balance can round the new EMI down to its own interest; that fails here like any non-amortizing EMI.
        plan.new_emi = compute_emi(balance, rate, remaining)
        schedule = amortize_until_paid(balance, rate, plan.new_emi, remaining + SCHEDULE_BUFFER_MONTHS)
        plan.remaining_schedule = schedule[:remaining]
        plan.total_interest = sum(row.interest for row in plan.remaining_schedule)
    except ValueError as e:
        logger.warning("reduce-EMI scenario failed: %s", e)
        plan.error = str(e)
    return plan


def original_remaining_interest(
    start_outstanding: float,
    rate: float,
    loan: LoanInput,
    official_schedule: Optional[Sequence[OfficialRow]] = None,
) -> Optional[float]:
    # Interest still due if nothing is prepaid: the bank's own figures when complete, else a same-EMI replay.
    if official_schedule and len(official_schedule) > loan.paid_emis:
        remaining_rows = official_schedule[loan.paid_emis:]
        if all(row.interest is not None for row in remaining_rows):
            return sum(row.interest for row in remaining_rows)
    try:
        rows = amortize_until_paid(start_outstanding, rate, loan.emi, AMORTIZE_MAX_MONTHS)
    except NonAmortizingEmiError:
        return None
    if rows and rows[-1].remaining > 0:
        # Cut off by the cap, so the total would be short
        return None
    return sum(row.interest for row in rows)


def reschedule(
    loan: LoanInput,
    prepayments: Iterable[Union[Prepayment, Mapping[str, object]]] = (),
    official_schedule: Optional[Sequence[OfficialRow]] = None,
) -> RescheduleResult:
    # Main flow:
    # 1) start balance after the paid EMIs
    # 2) walk the prepayment window
    # 3) scenario A (keep EMI) and scenario B (keep tenure) from the same balance
    # 4) compare both with the unmodified plan
    if loan.emi is None or loan.emi <= 0:
        raise LoanInputError("emi must be greater than 0")
    if loan.annual_rate is None or loan.annual_rate < 0:
        raise LoanInputError("annualRate must not be negative")
    if loan.paid_emis < 0:
        raise LoanInputError("paidEmis must not be negative")

    rate = monthly_rate(loan.annual_rate)
    start_outstanding = derive_start_outstanding(loan, official_schedule)

    plan = merge_prepayments(prepayments)
    sim = simulate_prepayments(start_outstanding, rate, loan.emi, loan.paid_emis, plan)

    keep = keep_emi_plan(sim.outstanding, rate, loan.emi)
    reduce = reduce_emi_plan(sim.outstanding, rate, loan.total_tenure, sim.end_month)

    baseline = original_remaining_interest(start_outstanding, rate, loan, official_schedule)
    window_interest = sum(e.interest for e in sim.events if e.action == ACTION_EMI)
    saved_keep = None
    saved_reduce = None
    if baseline is not None:
        if keep.error is None and not keep.unbounded:
            saved_keep = baseline - (window_interest + keep.total_interest)
        if reduce.error is None:
            saved_reduce = baseline - (window_interest + reduce.total_interest)

    return RescheduleResult(
        start_outstanding=start_outstanding,
        outstanding_after_prepayments=sim.outstanding,
        sim_log=sim.events,
        keep_emi=keep,
        reduce_emi=reduce,
        original_remaining_interest=baseline,
        interest_saved_keep_emi=saved_keep,
        interest_saved_reduce_emi=saved_reduce,
    )
