"""
Fee budget accounting for cl-autoloop

Only swaps dispatched by the autolooper (identified by their reserved
label) and started on or after the budget start date count towards the
budget. Successful swaps count their realized cost, pending swaps their
worst-case fees. Failed swaps count nothing.
"""

from dataclasses import dataclass
from typing import List

from .swaps import ExistingSwap, SwapStateType, SwapType


def worst_case_out_fees(max_prepay_routing_fee: int, max_swap_fee: int,
                        max_swap_routing_fee: int, max_miner_fee: int,
                        max_prepay_amount: int) -> int:
    """
    Largest amount a loop out can cost us.

    Either the swap completes and every fee is paid, or the server takes the
    prepay and never publishes its HTLC.
    """
    success_fees = (max_prepay_routing_fee + max_miner_fee +
                    max_swap_fee + max_swap_routing_fee)
    no_show_fees = max_prepay_routing_fee + max_prepay_amount
    return max(success_fees, no_show_fees)


def worst_case_in_fees(max_swap_fee: int, max_miner_fee: int) -> int:
    return max_swap_fee + max_miner_fee


def swap_worst_case(swap: ExistingSwap) -> int:
    if swap.swap_type == SwapType.LOOP_IN:
        return worst_case_in_fees(swap.max_swap_fee, swap.max_miner_fee)
    return worst_case_out_fees(
        swap.max_prepay_routing_fee, swap.max_swap_fee,
        swap.max_swap_routing_fee, swap.max_miner_fee,
        swap.max_prepay_amount,
    )


@dataclass
class AutoloopSummary:
    """Budget usage and concurrency of autolooper swaps since the budget start."""
    spent_fees: int = 0
    pending_fees: int = 0
    in_flight_count: int = 0

    @property
    def total(self) -> int:
        return self.spent_fees + self.pending_fees


def summarize_autoloops(loop_outs: List[ExistingSwap], loop_ins: List[ExistingSwap],
                        budget_start: int) -> AutoloopSummary:
    summary = AutoloopSummary()
    for swap in list(loop_outs) + list(loop_ins):
        if not swap.is_autoloop():
            continue

        state_type = swap.state().state_type
        if state_type == SwapStateType.PENDING:
            # In flight regardless of when it started
            summary.in_flight_count += 1

        if swap.initiation_time < budget_start:
            continue

        if state_type == SwapStateType.SUCCESS:
            summary.spent_fees += swap.cost().total()
        elif state_type == SwapStateType.PENDING:
            summary.pending_fees += swap_worst_case(swap)

    return summary


class BudgetLedger:
    """
    Running budget for one cycle.

    Starts from the fees already committed and admits candidates in order
    while they fit.
    """

    def __init__(self, fee_budget: int, committed: int):
        self.fee_budget = fee_budget
        self.committed = committed

    def available(self) -> int:
        return max(0, self.fee_budget - self.committed)

    def try_admit(self, fees: int) -> bool:
        if self.committed + fees > self.fee_budget:
            return False
        self.committed += fees
        return True
