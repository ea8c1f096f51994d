from loan_prepay.calculator import LoanInput, Prepayment, reschedule


def main() -> None:
    loan = LoanInput(principal=3_200_000, annual_rate=8.35, emi=31_231, total_tenure=180, paid_emis=4)
    result = reschedule(loan, [Prepayment(month=12, amount=200_000)])

    print(f"outstanding after prepayments: {result.outstanding_after_prepayments:,.0f}")
    for event in result.sim_log:
        if event.action == "EMI":
            print(f"  month {event.month:>3} EMI      {event.emi_paid:>10,.0f} -> {event.remaining_after_emi:,.0f}")
        else:
            print(f"  month {event.month:>3} {event.action} {event.prepay_amount:,.0f} -> {event.remaining_after_prepay:,.0f}")

    keep = result.keep_emi
    if keep.unbounded:
        print("keep EMI: never finishes")
    else:
        print(f"keep EMI: {keep.months_to_finish} months, interest {keep.total_interest:,.0f}")
    reduce = result.reduce_emi
    print(f"reduce EMI: new EMI {reduce.new_emi:,.0f}, interest {reduce.total_interest:,.0f}")
    if result.interest_saved_keep_emi is not None:
        print(f"interest saved (keep EMI): {result.interest_saved_keep_emi:,.0f}")
    if result.interest_saved_reduce_emi is not None:
        print(f"interest saved (reduce EMI): {result.interest_saved_reduce_emi:,.0f}")


if __name__ == "__main__":
    main()
