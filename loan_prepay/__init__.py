"""Loan prepayment planner.

Common imports:
    from loan_prepay import LoanInput, Prepayment, reschedule

Debug run:
    python -m loan_prepay

The debug entry runs a sample reschedule and prints both scenarios.
"""

from .calculator import (
    LoanInput,
    LoanInputError,
    NonAmortizingEmiError,
    OfficialRow,
    Prepayment,
    RescheduleResult,
    ScheduleRow,
    SimulationEvent,
    reschedule,
)

__all__ = [
    "LoanInput",
    "LoanInputError",
    "NonAmortizingEmiError",
    "OfficialRow",
    "Prepayment",
    "RescheduleResult",
    "ScheduleRow",
    "SimulationEvent",
    "reschedule",
]
