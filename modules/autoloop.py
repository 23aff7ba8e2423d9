"""
Autoloop manager for cl-autoloop

Runs the liquidity control loop:

1. Read restrictions, swap history and channel balances
2. Evaluate threshold rules into loop out suggestions
3. Drop suggestions blocked by in-flight or recently failed swaps
4. Quote each survivor and check it against the fee limits
5. Select the largest swaps that fit the in-flight allowance and budget
6. Dispatch them (only when autoloop is enabled)

Each cycle reads the parameters once at its start, so a concurrent
set_parameters never affects a cycle already running.

Thread Safety:
- Parameters are swapped atomically by ParameterStore
- _cycle_lock serializes run_cycle between the run loop and RPC handlers
- shutdown_event is checked before every collaborator call
"""

import threading
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, TYPE_CHECKING

from .balances import build_snapshot
from .budget import BudgetLedger, summarize_autoloops, worst_case_out_fees
from .eligibility import current_swap_traffic
from .metrics import MetricNames
from .parameters import (
    Parameters, ParameterStore, validate_parameters
)
from .restrictions import fetch_restrictions
from .rules import SwapSuggestion, evaluate_rules
from .swaps import (
    AUTOLOOP_INITIATOR, CollaboratorError, DispatchRequest, Quote,
    QuoteRequest, SwapHandle, SwapType, autoloop_label, ppm_to_sat
)

if TYPE_CHECKING:
    from .clients import SwapServiceClient, NodeClient
    from .database import Database
    from .metrics import PrometheusExporter
    from .scheduler import ForceTicker


class AutoloopCancelled(Exception):
    """Shutdown was requested while idle or between collaborator calls."""


class ManagerState(Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    STOPPED = "stopped"


class RunResult(Enum):
    CANCELLED = "cancelled"
    FAULT = "fault"


@dataclass
class PlannedSwap:
    """A quoted suggestion with its dispatch request and worst-case fees."""
    suggestion: SwapSuggestion
    quote: Quote
    request: DispatchRequest
    worst_case_fees: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.suggestion.scope,
            "target": self.suggestion.target,
            "amount_sats": self.request.amount,
            "outgoing_chan_set": list(self.request.outgoing_chan_set),
            "swap_fee_sats": self.quote.swap_fee,
            "prepay_amount_sats": self.quote.prepay_amount,
            "miner_fee_sats": self.quote.miner_fee,
            "worst_case_fee_sats": self.worst_case_fees,
        }


@dataclass
class CycleResult:
    """Outcome of one evaluation, with or without dispatch."""
    timestamp: int
    autoloop: bool
    suggestions: List[SwapSuggestion] = field(default_factory=list)
    selected: List[PlannedSwap] = field(default_factory=list)
    disqualified: List[Dict[str, str]] = field(default_factory=list)
    dispatched: List[SwapHandle] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    budget_committed: int = 0
    in_flight: int = 0
    error: Optional[str] = None

    def disqualify(self, target: str, reason: str) -> None:
        self.disqualified.append({"target": target, "reason": reason})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "autoloop": self.autoloop,
            "suggestions": len(self.suggestions),
            "selected": [p.to_dict() for p in self.selected],
            "disqualified": list(self.disqualified),
            "dispatched": [
                {"swap_id": h.swap_id, "htlc_address": h.htlc_address}
                for h in self.dispatched
            ],
            "failed": list(self.failed),
            "budget_committed_sats": self.budget_committed,
            "in_flight": self.in_flight,
            "error": self.error,
        }


def check_fee_limits(params: Parameters, amount: int, quote: Quote,
                     sweep_fee_rate: int) -> Optional[str]:
    """Return the reason a quote breaks the fee limits, or None if it fits."""
    max_swap_fee = ppm_to_sat(amount, params.maximum_swap_fee_ppm)
    if quote.swap_fee > max_swap_fee:
        return f"swap fee {quote.swap_fee} exceeds {max_swap_fee}"
    if quote.miner_fee > params.maximum_miner_fee:
        return f"miner fee {quote.miner_fee} exceeds {params.maximum_miner_fee}"
    if quote.prepay_amount > params.maximum_prepay:
        return f"prepay {quote.prepay_amount} exceeds {params.maximum_prepay}"
    if sweep_fee_rate > params.sweep_fee_rate_limit:
        return (
            f"sweep fee rate {sweep_fee_rate} sat/kw exceeds "
            f"{params.sweep_fee_rate_limit}"
        )
    return None


def build_dispatch_request(params: Parameters, suggestion: SwapSuggestion,
                           quote: Quote, autoloop: bool) -> DispatchRequest:
    label = autoloop_label(SwapType.LOOP_OUT) if autoloop else ""
    initiator = AUTOLOOP_INITIATOR if autoloop else ""
    return DispatchRequest(
        amount=suggestion.amount,
        max_swap_routing_fee=ppm_to_sat(suggestion.amount, params.maximum_routing_fee_ppm),
        max_prepay_routing_fee=ppm_to_sat(
            quote.prepay_amount, params.maximum_prepay_routing_fee_ppm
        ),
        max_swap_fee=quote.swap_fee,
        max_prepay_amount=quote.prepay_amount,
        max_miner_fee=params.maximum_miner_fee,
        sweep_conf_target=params.sweep_conf_target,
        outgoing_chan_set=tuple(suggestion.outgoing_chan_set),
        label=label,
        initiator=initiator,
    )


def request_worst_case(request: DispatchRequest) -> int:
    return worst_case_out_fees(
        request.max_prepay_routing_fee, request.max_swap_fee,
        request.max_swap_routing_fee, request.max_miner_fee,
        request.max_prepay_amount,
    )


class AutoloopManager:
    """
    Liquidity controller that suggests and dispatches loop out swaps.

    Collaborators are injected so tests can drive every cycle with fakes:
    swap_client (restrictions, history, quotes, dispatch), node_client
    (channels, fee estimates), clock and ticker.
    """

    def __init__(self, plugin, swap_client: 'SwapServiceClient',
                 node_client: 'NodeClient', clock, ticker: 'ForceTicker',
                 database: Optional['Database'] = None,
                 metrics: Optional['PrometheusExporter'] = None,
                 min_confirmations: int = 9):
        self.plugin = plugin
        self.swap_client = swap_client
        self.node_client = node_client
        self.clock = clock
        self.ticker = ticker
        self.database = database
        self.metrics = metrics
        self.min_confirmations = min_confirmations

        self._params = ParameterStore()
        self._cycle_lock = threading.Lock()
        self._state = ManagerState.IDLE
        self._last_cycle: Optional[CycleResult] = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def last_cycle(self) -> Optional[CycleResult]:
        return self._last_cycle

    # =========================================================================
    # Parameters
    # =========================================================================

    def get_parameters(self) -> Parameters:
        return self._params.get()

    def set_parameters(self, params: Parameters) -> None:
        """
        Validate and activate a new parameter set.

        Raises:
            CollaboratorError: if restrictions or channels can't be fetched
            ParameterValidationError: if the parameters are invalid
        """
        server = self.swap_client.restrictions(SwapType.LOOP_OUT)
        channels = self.node_client.channel_balances()

        validate_parameters(params, server, channels, self.min_confirmations)

        # Saved before activation so a concurrent restore_parameters sees it
        if self.database:
            version = self.database.save_parameters(params.to_dict())
            self._params.set(params)
            self.plugin.log(f"Autoloop parameters updated (version {version})")
        else:
            self._params.set(params)
            self.plugin.log("Autoloop parameters updated")

        self.plugin.log(
            f"autoloop={params.autoloop} budget={params.fee_budget} "
            f"channel_rules={len(params.channel_rules)} "
            f"peer_rules={len(params.peer_rules)} "
            f"max_in_flight={params.max_autoloop_in_flight}",
            level='debug'
        )

    def restore_parameters(self) -> bool:
        """
        Activate the persisted parameters at startup without re-saving them.

        set_parameters saves before it activates, so taking the active object
        before loading means any update that lands while this validates
        makes the compare-and-set fail and the newer set stays active.

        Returns:
            True if stored parameters were found and are now active

        Raises:
            CollaboratorError: if restrictions or channels can't be fetched
            ParameterValidationError: if the stored parameters are invalid
        """
        if not self.database:
            return False

        before = self._params.get()
        stored = self.database.load_parameters()
        if not stored:
            self.plugin.log("No stored autoloop parameters, using defaults")
            return False
        params = Parameters.from_dict(stored)

        server = self.swap_client.restrictions(SwapType.LOOP_OUT)
        channels = self.node_client.channel_balances()
        validate_parameters(params, server, channels, self.min_confirmations)

        if not self._params.compare_and_set(before, params):
            self.plugin.log("Parameters changed during restore, keeping the newer set",
                            level='warn')
            return False

        self.plugin.log(
            f"Restored autoloop parameters (version "
            f"{self.database.get_parameters_version()})"
        )
        return True

    # =========================================================================
    # Suggestion pipeline
    # =========================================================================

    def _check_cancel(self, shutdown_event: Optional[threading.Event]) -> None:
        if shutdown_event is not None and shutdown_event.is_set():
            raise AutoloopCancelled()

    def _plan(self, params: Parameters, autoloop: bool,
              shutdown_event: Optional[threading.Event]) -> CycleResult:
        now = self.clock.now()
        result = CycleResult(timestamp=now, autoloop=autoloop)

        if params.fee_budget_start > now:
            self.plugin.log(
                f"Budget start {params.fee_budget_start} is in the future, "
                f"no swaps suggested",
                level='debug'
            )
            return result

        self._check_cancel(shutdown_event)
        restrictions = fetch_restrictions(
            self.swap_client, SwapType.LOOP_OUT, params.client_restrictions
        )

        self._check_cancel(shutdown_event)
        loop_outs = self.swap_client.list_swaps(SwapType.LOOP_OUT)
        self._check_cancel(shutdown_event)
        loop_ins = self.swap_client.list_swaps(SwapType.LOOP_IN)

        summary = summarize_autoloops(loop_outs, loop_ins, params.fee_budget_start)
        result.budget_committed = summary.total
        result.in_flight = summary.in_flight_count

        allowance = params.max_autoloop_in_flight - summary.in_flight_count
        if allowance <= 0:
            self.plugin.log(
                f"{summary.in_flight_count} autoloop swaps in flight "
                f"(max {params.max_autoloop_in_flight}), skipping",
                level='debug'
            )
            return result

        self._check_cancel(shutdown_event)
        snapshot = build_snapshot(self.node_client.channel_balances())

        result.suggestions = evaluate_rules(
            snapshot, params.peer_rules, params.channel_rules, restrictions,
            params.sweep_conf_target, self.plugin
        )

        traffic = current_swap_traffic(loop_outs, loop_ins, now, params.failure_backoff)
        eligible = []
        for suggestion in result.suggestions:
            allowed, reason = traffic.may_swap(suggestion)
            if not allowed:
                self.plugin.log(f"Skipping {suggestion.target}: {reason}", level='debug')
                result.disqualify(suggestion.target, reason)
                continue
            eligible.append(suggestion)

        if not eligible:
            return result

        self._check_cancel(shutdown_event)
        sweep_fee_rate = self.node_client.estimate_fee(params.sweep_conf_target)

        planned: List[PlannedSwap] = []
        for suggestion in eligible:
            self._check_cancel(shutdown_event)
            request = QuoteRequest(
                amount=suggestion.amount,
                sweep_conf_target=suggestion.sweep_conf_target,
                publication_deadline=now,
            )
            try:
                quote = self.swap_client.quote(request)
            except CollaboratorError as e:
                self.plugin.log(f"Quote for {suggestion.target} failed: {e}", level='warn')
                result.disqualify(suggestion.target, f"quote failed: {e}")
                continue
            finally:
                if self.metrics:
                    self.metrics.inc_counter(MetricNames.QUOTES_TOTAL)

            reason = check_fee_limits(params, suggestion.amount, quote, sweep_fee_rate)
            if reason:
                self.plugin.log(
                    f"Loop out of {suggestion.amount} sats for {suggestion.target} "
                    f"exceeds fee limits: {reason}",
                    level='info'
                )
                result.disqualify(suggestion.target, reason)
                continue

            dispatch_request = build_dispatch_request(params, suggestion, quote, autoloop)
            planned.append(PlannedSwap(
                suggestion=suggestion,
                quote=quote,
                request=dispatch_request,
                worst_case_fees=request_worst_case(dispatch_request),
            ))

        # Largest swaps get first claim on the allowance and budget
        planned.sort(key=lambda p: p.request.amount, reverse=True)

        ledger = BudgetLedger(params.fee_budget, summary.total)
        for plan in planned:
            target = plan.suggestion.target
            if len(result.selected) >= allowance:
                result.disqualify(target, "in flight limit reached")
                self.plugin.log(f"Skipping {target}: in flight limit reached", level='debug')
                continue
            if not ledger.try_admit(plan.worst_case_fees):
                reason = (
                    f"worst case fees {plan.worst_case_fees} exceed remaining "
                    f"budget {ledger.available()}"
                )
                result.disqualify(target, reason)
                self.plugin.log(f"Skipping {target}: {reason}", level='debug')
                continue
            result.selected.append(plan)

        result.budget_committed = ledger.committed
        return result

    def suggest_swaps(self, autoloop: bool = False,
                      shutdown_event: Optional[threading.Event] = None) -> CycleResult:
        """
        Evaluate the current parameters without dispatching anything.

        With autoloop=False the selected requests carry no autoloop label,
        so they can be handed to the swap service as manual swaps.
        """
        return self._plan(self.get_parameters(), autoloop, shutdown_event)

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self, shutdown_event: Optional[threading.Event] = None) -> CycleResult:
        """
        Run one full evaluation and dispatch the selected swaps.

        Raises:
            AutoloopCancelled: if shutdown is requested mid-cycle
            CollaboratorError: if restrictions, history, channels or the
                fee estimate can't be fetched
        """
        with self._cycle_lock:
            self._state = ManagerState.EVALUATING
            params = self.get_parameters()
            result = None
            try:
                result = self._plan(params, params.autoloop, shutdown_event)
                if params.autoloop:
                    self._dispatch(result, shutdown_event)
                elif result.selected:
                    for plan in result.selected:
                        self.plugin.log(
                            f"Autoloop disabled, would dispatch loop out of "
                            f"{plan.request.amount} sats for {plan.suggestion.target} "
                            f"over {','.join(plan.request.outgoing_chan_set)}"
                        )
                self._record_cycle(result, "completed")
                return result
            except CollaboratorError as e:
                self._record_cycle(
                    CycleResult(timestamp=self.clock.now(), autoloop=params.autoloop,
                                error=str(e)),
                    "error"
                )
                raise
            except AutoloopCancelled:
                if result is not None:
                    # Swaps dispatched before the cancel are already live
                    self._record_cycle(result, "cancelled")
                elif self.metrics:
                    self.metrics.inc_counter(MetricNames.CYCLES_TOTAL,
                                             labels={"outcome": "cancelled"})
                raise
            finally:
                if self._state == ManagerState.EVALUATING:
                    self._state = ManagerState.IDLE

    def _dispatch(self, result: CycleResult,
                  shutdown_event: Optional[threading.Event]) -> None:
        for plan in result.selected:
            self._check_cancel(shutdown_event)
            request = plan.request
            try:
                handle = self.swap_client.dispatch(request)
            except CollaboratorError as e:
                self.plugin.log(
                    f"Dispatch of {request.amount} sats for {plan.suggestion.target} "
                    f"failed: {e}",
                    level='warn'
                )
                result.failed.append({"target": plan.suggestion.target, "error": str(e)})
                if self.database:
                    self.database.record_dispatch(
                        request.amount, plan.suggestion.scope, plan.suggestion.target,
                        list(request.outgoing_chan_set), plan.worst_case_fees,
                        status='failed', error_message=str(e),
                        timestamp=result.timestamp,
                    )
                if self.metrics:
                    self.metrics.inc_counter(MetricNames.DISPATCH_FAILURES_TOTAL)
                continue

            result.dispatched.append(handle)
            result.in_flight += 1
            self.plugin.log(
                f"Dispatched loop out {handle.swap_id}: {request.amount} sats for "
                f"{plan.suggestion.scope} {plan.suggestion.target}"
            )
            if self.database:
                self.database.record_dispatch(
                    request.amount, plan.suggestion.scope, plan.suggestion.target,
                    list(request.outgoing_chan_set), plan.worst_case_fees,
                    swap_id=handle.swap_id, timestamp=result.timestamp,
                )
            if self.metrics:
                self.metrics.inc_counter(MetricNames.DISPATCHES_TOTAL)

    def _record_cycle(self, result: CycleResult, outcome: str) -> None:
        self._last_cycle = result
        if not self.metrics:
            return
        self.metrics.inc_counter(MetricNames.CYCLES_TOTAL, labels={"outcome": outcome})
        if result.error is None:
            self.metrics.set_gauge(MetricNames.BUDGET_SPENT_SATS, result.budget_committed)
            self.metrics.set_gauge(MetricNames.IN_FLIGHT_SWAPS, result.in_flight)
            self.metrics.set_gauge(MetricNames.LAST_RUN_TIMESTAMP, result.timestamp)

    # =========================================================================
    # Run loop
    # =========================================================================

    def force_autoloop(self) -> None:
        """Trigger a cycle without waiting for the interval."""
        self.ticker.force()

    def run(self, shutdown_event: threading.Event) -> RunResult:
        """
        Run cycles on every tick until shutdown.

        Collaborator errors end only the current cycle. Returns CANCELLED
        on shutdown and FAULT on any unexpected error.
        """
        self.plugin.log("Autoloop manager started")
        try:
            while True:
                self._state = ManagerState.IDLE
                if not self.ticker.wait_for_tick(shutdown_event):
                    raise AutoloopCancelled()
                try:
                    self.run_cycle(shutdown_event)
                except CollaboratorError as e:
                    self.plugin.log(f"Autoloop cycle aborted: {e}", level='warn')
        except AutoloopCancelled:
            self._state = ManagerState.STOPPED
            self.plugin.log("Autoloop manager stopped")
            return RunResult.CANCELLED
        except Exception as e:
            self._state = ManagerState.STOPPED
            self.plugin.log(f"Autoloop manager failed: {e}", level='error')
            self.plugin.log(f"Traceback: {traceback.format_exc()}", level='error')
            return RunResult.FAULT
