"""
Tests for AutoloopManager - the full quote and dispatch cycle.

Tests:
- Autoloop disabled: quotes requested, nothing dispatched
- Multi-cycle scenario with in-flight limit, budget and failure backoff
- Composite peer + channel rules
- Fee limit, quote and dispatch failure handling
- Run loop cancellation and fault handling
"""

from dataclasses import replace
from unittest.mock import call

import pytest

from modules.autoloop import AutoloopCancelled, AutoloopManager, ManagerState, RunResult
from modules.clients import SwapServiceClient
from modules.metrics import MetricNames, PrometheusExporter
from modules.parameters import DEFAULT_PARAMETERS
from modules.restrictions import Restrictions
from modules.swaps import (
    AUTOLOOP_INITIATOR, CollaboratorError, DispatchRequest, Quote, QuoteRequest,
    SwapCost, SwapHandle, SwapState, SwapType, autoloop_label, ppm_to_sat
)

from conftest import (
    TEST_FEE_PPM, TEST_MINER_FEE, TEST_NOW, TEST_PREPAY,
    make_channel, make_loop_out, quote_for
)


# Worst case fees of a 7500 sat loop out at the test limits:
# prepay routing 20 + miner 20000 + swap fee 7 + swap routing 7
SMALL_SWAP_FEES = 20034

LARGE_BUDGET = 1_000_000


def autoloop_params(**overrides):
    params = replace(
        DEFAULT_PARAMETERS,
        autoloop=True,
        maximum_swap_fee_ppm=TEST_FEE_PPM,
        maximum_routing_fee_ppm=TEST_FEE_PPM,
        maximum_prepay_routing_fee_ppm=TEST_FEE_PPM,
        maximum_prepay=TEST_PREPAY,
        maximum_miner_fee=TEST_MINER_FEE,
        fee_budget=LARGE_BUDGET,
    )
    return replace(params, **overrides)


def expected_request(amount, channels, autoloop=True):
    return DispatchRequest(
        amount=amount,
        max_swap_routing_fee=ppm_to_sat(amount, TEST_FEE_PPM),
        max_prepay_routing_fee=ppm_to_sat(TEST_PREPAY, TEST_FEE_PPM),
        max_swap_fee=ppm_to_sat(amount, TEST_FEE_PPM),
        max_prepay_amount=TEST_PREPAY,
        max_miner_fee=TEST_MINER_FEE,
        sweep_conf_target=100,
        outgoing_chan_set=tuple(channels),
        label=autoloop_label(SwapType.LOOP_OUT) if autoloop else "",
        initiator=AUTOLOOP_INITIATOR if autoloop else "",
    )


def dispatch_handle(request):
    return SwapHandle(swap_id=f"swap-{request.outgoing_chan_set[0]}")


@pytest.fixture
def history(swap_client):
    """Swap history served by the fake swap service, keyed by type."""
    swaps = {SwapType.LOOP_OUT: [], SwapType.LOOP_IN: []}
    swap_client.list_swaps.side_effect = lambda swap_type: swaps[swap_type]
    return swaps


@pytest.fixture
def two_channels(node_client, sample_channel_ids, sample_peer_ids):
    """Two fully local 10k channels to different peers."""
    chan1, chan2 = sample_channel_ids[:2]
    node_client.channel_balances.return_value = [
        make_channel(chan1, sample_peer_ids[0]),
        make_channel(chan2, sample_peer_ids[1]),
    ]
    return chan1, chan2


class TestAutoloopDisabled:

    def test_quotes_but_does_not_dispatch(self, manager, swap_client, mock_plugin,
                                          two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(autoloop=False, channel_rules={chan1: rule}))

        result = manager.run_cycle()

        swap_client.quote.assert_called_once_with(
            QuoteRequest(amount=7500, sweep_conf_target=100, publication_deadline=TEST_NOW)
        )
        swap_client.dispatch.assert_not_called()
        assert [p.request for p in result.selected] == [
            expected_request(7500, [chan1], autoloop=False)
        ]
        logged = " ".join(str(c.args[0]) for c in mock_plugin.log.call_args_list)
        assert "would dispatch" in logged

    def test_suggest_never_dispatches(self, manager, swap_client, two_channels, rule):
        chan1, chan2 = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule, chan2: rule},
                                               max_autoloop_in_flight=2))

        result = manager.suggest_swaps()

        assert swap_client.quote.call_count == 2
        swap_client.dispatch.assert_not_called()
        assert all(p.request.label == "" for p in result.selected)


class TestAutoloopEnabled:

    def test_four_cycles(self, manager, swap_client, history, two_channels, rule, clock):
        chan1, chan2 = two_channels
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(
            channel_rules={chan1: rule, chan2: rule},
            fee_budget=2 * SMALL_SWAP_FEES + 10,
            max_autoloop_in_flight=2,
            failure_backoff=3600,
        ))
        req1 = expected_request(7500, [chan1])
        req2 = expected_request(7500, [chan2])
        quote_req = QuoteRequest(amount=7500, sweep_conf_target=100, publication_deadline=TEST_NOW)
        settled_cost = SwapCost(server=7, onchain=20000, offchain=14)

        # Cycle 1: no history, both channels quoted and dispatched
        manager.run_cycle()
        assert swap_client.quote.call_args_list == [call(quote_req), call(quote_req)]
        assert swap_client.dispatch.call_args_list == [call(req1), call(req2)]

        # Cycle 2: both swaps in flight
        swap_client.quote.reset_mock()
        swap_client.dispatch.reset_mock()
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], request=req1),
            make_loop_out([chan2], request=req2),
        ]
        manager.run_cycle()
        swap_client.quote.assert_not_called()
        swap_client.dispatch.assert_not_called()

        # Cycle 3: first swap settles, second fails off-chain and backs off
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], state=SwapState.SUCCESS, cost=settled_cost,
                          updated_at=TEST_NOW - 10, request=req1),
            make_loop_out([chan2], state=SwapState.FAIL_OFFCHAIN_PAYMENTS,
                          updated_at=TEST_NOW - 10, request=req2),
        ]
        result = manager.run_cycle()
        swap_client.quote.assert_called_once_with(quote_req)
        swap_client.dispatch.assert_called_once_with(req1)
        assert result.disqualified[0]["target"] == chan2

        # Cycle 4: backoff over, but the settled cost plus the new pending
        # swap leave less than one swap's worst case in the budget
        swap_client.quote.reset_mock()
        swap_client.dispatch.reset_mock()
        clock.set(TEST_NOW + 3600)
        history[SwapType.LOOP_OUT].append(
            make_loop_out([chan1], request=req1, initiated_at=TEST_NOW,
                          updated_at=TEST_NOW)
        )
        result = manager.run_cycle()
        swap_client.quote.assert_called_once_with(
            QuoteRequest(amount=7500, sweep_conf_target=100,
                         publication_deadline=TEST_NOW + 3600)
        )
        swap_client.dispatch.assert_not_called()
        assert result.budget_committed == 20021 + SMALL_SWAP_FEES
        assert {
            "target": chan2,
            "reason": f"worst case fees {SMALL_SWAP_FEES} exceed remaining budget 23",
        } in result.disqualified

    def test_failed_swap_releases_budget(self, manager, swap_client, history,
                                         two_channels, rule):
        chan1, chan2 = two_channels
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(
            channel_rules={chan1: rule, chan2: rule},
            fee_budget=2 * SMALL_SWAP_FEES,
            max_autoloop_in_flight=2,
        ))
        req1 = expected_request(7500, [chan1])
        req2 = expected_request(7500, [chan2])
        quote_req = QuoteRequest(amount=7500, sweep_conf_target=100, publication_deadline=TEST_NOW)

        # Cycle 1: both channels breach, both fit budget and in-flight limit
        result = manager.run_cycle()
        assert swap_client.quote.call_args_list == [call(quote_req), call(quote_req)]
        assert swap_client.dispatch.call_args_list == [call(req1), call(req2)]
        assert [h.swap_id for h in result.dispatched] == [f"swap-{chan1}", f"swap-{chan2}"]

        # Cycle 2: both swaps in flight, limit reached before quoting
        swap_client.quote.reset_mock()
        swap_client.dispatch.reset_mock()
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], request=req1),
            make_loop_out([chan2], request=req2),
        ]
        result = manager.run_cycle()
        swap_client.quote.assert_not_called()
        swap_client.dispatch.assert_not_called()
        assert result.in_flight == 2
        assert result.budget_committed == 2 * SMALL_SWAP_FEES

        # Cycle 3: first swap succeeded; its realized cost plus the pending
        # worst case leave no room for another swap
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], state=SwapState.SUCCESS,
                          cost=SwapCost(server=7, onchain=20000, offchain=14), request=req1),
            make_loop_out([chan2], request=req2),
        ]
        result = manager.run_cycle()
        swap_client.quote.assert_called_once_with(quote_req)
        swap_client.dispatch.assert_not_called()
        assert any("budget" in d["reason"] for d in result.disqualified)

        # Cycle 4: second swap failed, so it costs nothing and its channel
        # backs off; the first channel fits the budget again
        swap_client.quote.reset_mock()
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], state=SwapState.SUCCESS,
                          cost=SwapCost(server=7, onchain=20000, offchain=14), request=req1),
            make_loop_out([chan2], state=SwapState.FAIL_OFFCHAIN_PAYMENTS,
                          updated_at=TEST_NOW - 10, request=req2),
        ]
        result = manager.run_cycle()
        swap_client.quote.assert_called_once_with(quote_req)
        swap_client.dispatch.assert_called_once_with(req1)
        assert result.budget_committed == 20021 + SMALL_SWAP_FEES

    def test_in_flight_limit_prefers_largest_swap(self, manager, swap_client, node_client,
                                                  sample_channel_ids, sample_peer_ids, rule):
        small, large = sample_channel_ids[:2]
        node_client.channel_balances.return_value = [
            make_channel(small, sample_peer_ids[0], capacity=10000),
            make_channel(large, sample_peer_ids[1], capacity=20000),
        ]
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(channel_rules={small: rule, large: rule}))

        result = manager.run_cycle()

        assert swap_client.quote.call_count == 2
        swap_client.dispatch.assert_called_once_with(expected_request(15000, [large]))
        assert result.disqualified == [{"target": small, "reason": "in flight limit reached"}]

    def test_below_minimum_is_never_quoted(self, manager, swap_client, two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule}))
        swap_client.restrictions.return_value = Restrictions(minimum=8000, maximum=100000)

        manager.run_cycle()

        swap_client.quote.assert_not_called()
        swap_client.dispatch.assert_not_called()

    def test_client_maximum_below_server_minimum_is_never_quoted(self, manager, swap_client,
                                                                 two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule},
                                               client_restrictions=Restrictions(0, 5000)))
        swap_client.restrictions.return_value = Restrictions(minimum=8000, maximum=100000)

        with pytest.raises(CollaboratorError, match="below server minimum"):
            manager.run_cycle()

        swap_client.quote.assert_not_called()
        swap_client.dispatch.assert_not_called()

    def test_budget_start_in_future_suggests_nothing(self, manager, swap_client,
                                                     two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule},
                                               fee_budget_start=TEST_NOW + 60))

        result = manager.run_cycle()

        swap_client.list_swaps.assert_not_called()
        swap_client.quote.assert_not_called()
        assert result.selected == []

    @pytest.mark.parametrize("age,quoted", [
        (86400 - 1, False),
        (86400, True),
    ])
    def test_failure_backoff_boundary(self, manager, swap_client, history, two_channels,
                                      rule, age, quoted):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule}))
        history[SwapType.LOOP_OUT] = [
            make_loop_out([chan1], state=SwapState.FAIL_TIMEOUT, updated_at=TEST_NOW - age),
        ]

        manager.run_cycle()

        assert swap_client.quote.called is quoted


class TestCompositeRules:

    def test_peer_and_channel_rules(self, manager, swap_client, node_client,
                                    sample_channel_ids, sample_peer_ids, rule):
        chan1, chan2, chan3 = sample_channel_ids
        peer1, peer2 = sample_peer_ids[:2]
        node_client.channel_balances.return_value = [
            make_channel(chan1, peer1),
            make_channel(chan2, peer1),
            make_channel(chan3, peer2),
        ]
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(
            peer_rules={peer1: rule},
            channel_rules={chan3: rule},
            max_autoloop_in_flight=2,
        ))

        result = manager.run_cycle()

        assert swap_client.dispatch.call_args_list == [
            call(expected_request(15000, [chan1, chan2])),
            call(expected_request(7500, [chan3])),
        ]
        assert [p.suggestion.scope for p in result.selected] == ["peer", "channel"]


class TestFeeLimits:

    @pytest.fixture
    def one_rule(self, manager, two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule}))
        return chan1

    @pytest.mark.parametrize("quote,reason", [
        (Quote(swap_fee=8, prepay_amount=TEST_PREPAY, miner_fee=TEST_MINER_FEE), "swap fee"),
        (Quote(swap_fee=7, prepay_amount=TEST_PREPAY, miner_fee=TEST_MINER_FEE + 1), "miner fee"),
        (Quote(swap_fee=7, prepay_amount=TEST_PREPAY + 1, miner_fee=TEST_MINER_FEE), "prepay"),
    ])
    def test_quote_over_limit_is_dropped(self, manager, swap_client, one_rule, quote, reason):
        swap_client.quote.side_effect = None
        swap_client.quote.return_value = quote

        result = manager.run_cycle()

        swap_client.dispatch.assert_not_called()
        assert reason in result.disqualified[0]["reason"]

    def test_sweep_fee_rate_over_limit(self, manager, swap_client, node_client, one_rule):
        node_client.estimate_fee.return_value = 25301

        result = manager.run_cycle()

        node_client.estimate_fee.assert_called_once_with(100)
        swap_client.dispatch.assert_not_called()
        assert "sweep fee rate" in result.disqualified[0]["reason"]


class TestCollaboratorFailures:

    def test_quote_failure_drops_only_that_candidate(self, manager, swap_client,
                                                     two_channels, rule):
        chan1, chan2 = two_channels
        swap_client.quote.side_effect = [
            CollaboratorError("swap-quote-out", "unavailable"),
            quote_for(QuoteRequest(7500, 100)),
        ]
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule, chan2: rule},
                                               max_autoloop_in_flight=2))

        manager.run_cycle()

        swap_client.dispatch.assert_called_once_with(expected_request(7500, [chan2]))

    def test_dispatch_failure_does_not_stop_others(self, manager, swap_client,
                                                   two_channels, rule):
        chan1, chan2 = two_channels
        swap_client.dispatch.side_effect = [
            CollaboratorError("swap-out", "insufficient balance"),
            SwapHandle(swap_id="swap-2"),
        ]
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule, chan2: rule},
                                               max_autoloop_in_flight=2))

        result = manager.run_cycle()

        assert swap_client.dispatch.call_count == 2
        assert [h.swap_id for h in result.dispatched] == ["swap-2"]
        assert result.failed[0]["target"] == chan1
        statuses = [c.kwargs.get("status", "dispatched")
                    for c in manager.database.record_dispatch.call_args_list]
        assert statuses == ["failed", "dispatched"]

    def test_restrictions_failure_aborts_cycle(self, manager, swap_client):
        swap_client.restrictions.side_effect = CollaboratorError("swap-restrictions", "down")

        with pytest.raises(CollaboratorError):
            manager.run_cycle()

        swap_client.list_swaps.assert_not_called()
        assert manager.last_cycle.error is not None
        assert manager.state == ManagerState.IDLE


class TestRunLoop:

    def test_cancel_mid_cycle_skips_dispatch(self, manager, swap_client, ticker,
                                             shutdown_event, two_channels, rule):
        chan1, _ = two_channels
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule}))

        def quote_then_shutdown(request):
            shutdown_event.set()
            return quote_for(request)

        swap_client.quote.side_effect = quote_then_shutdown
        ticker.wait_for_tick.return_value = True

        assert manager.run(shutdown_event) == RunResult.CANCELLED
        swap_client.dispatch.assert_not_called()
        assert manager.state == ManagerState.STOPPED

    def test_cancel_mid_dispatch_records_dispatched_swaps(self, manager, swap_client,
                                                          shutdown_event, two_channels, rule):
        chan1, chan2 = two_channels
        manager.metrics = PrometheusExporter()
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule, chan2: rule},
                                               max_autoloop_in_flight=2))

        def dispatch_then_shutdown(request):
            shutdown_event.set()
            return dispatch_handle(request)

        swap_client.dispatch.side_effect = dispatch_then_shutdown

        with pytest.raises(AutoloopCancelled):
            manager.run_cycle(shutdown_event)

        assert swap_client.dispatch.call_count == 1
        assert [h.swap_id for h in manager.last_cycle.dispatched] == [f"swap-{chan1}"]
        assert manager.metrics.get_metric(MetricNames.IN_FLIGHT_SWAPS) == 1
        assert manager.metrics.get_metric(MetricNames.CYCLES_TOTAL,
                                          {"outcome": "cancelled"}) == 1

    def test_malformed_history_keeps_loop_running(self, mock_plugin, node_client, clock,
                                                  ticker, shutdown_event):
        responses = {
            "swap-restrictions": {"minimum_sats": 1, "maximum_sats": 100000},
            "swap-list": {"swaps": [{
                "type": "loop_out", "amount_sats": 7500, "initiation_time": 1,
                "events": ["success"],
            }]},
        }
        mock_plugin.rpc.call.side_effect = lambda method, payload: responses[method]
        manager = AutoloopManager(mock_plugin, SwapServiceClient(mock_plugin),
                                  node_client, clock, ticker)
        ticker.wait_for_tick.side_effect = [True, True, False]

        assert manager.run(shutdown_event) == RunResult.CANCELLED
        assert manager.last_cycle.error is not None
        node_client.channel_balances.assert_not_called()

    def test_run_cycle_raises_when_cancelled(self, manager, shutdown_event):
        shutdown_event.set()
        with pytest.raises(AutoloopCancelled):
            manager.run_cycle(shutdown_event)

    def test_collaborator_error_keeps_loop_running(self, manager, swap_client, ticker,
                                                   mock_plugin, shutdown_event):
        swap_client.restrictions.side_effect = CollaboratorError("swap-restrictions", "down")
        ticker.wait_for_tick.side_effect = [True, True, False]

        assert manager.run(shutdown_event) == RunResult.CANCELLED
        assert swap_client.restrictions.call_count == 2
        warnings = [c for c in mock_plugin.log.call_args_list
                    if c.kwargs.get("level") == 'warn']
        assert len(warnings) == 2

    def test_unexpected_error_is_a_fault(self, manager, node_client, ticker,
                                         mock_plugin, shutdown_event):
        node_client.channel_balances.side_effect = RuntimeError("boom")
        ticker.wait_for_tick.return_value = True

        assert manager.run(shutdown_event) == RunResult.FAULT
        assert manager.state == ManagerState.STOPPED
        assert any(c.kwargs.get("level") == 'error' for c in mock_plugin.log.call_args_list)

    def test_force_autoloop_forces_ticker(self, manager, ticker):
        manager.force_autoloop()
        ticker.force.assert_called_once()


class TestMetrics:

    def test_cycle_updates_metrics(self, manager, swap_client, two_channels, rule):
        chan1, chan2 = two_channels
        manager.metrics = PrometheusExporter()
        swap_client.dispatch.side_effect = dispatch_handle
        manager.set_parameters(autoloop_params(channel_rules={chan1: rule, chan2: rule},
                                               max_autoloop_in_flight=2))

        manager.run_cycle()

        metrics = manager.metrics
        assert metrics.get_metric(MetricNames.QUOTES_TOTAL) == 2
        assert metrics.get_metric(MetricNames.DISPATCHES_TOTAL) == 2
        assert metrics.get_metric(MetricNames.CYCLES_TOTAL, {"outcome": "completed"}) == 1
        assert metrics.get_metric(MetricNames.IN_FLIGHT_SWAPS) == 2
        assert metrics.get_metric(MetricNames.BUDGET_SPENT_SATS) == 2 * SMALL_SWAP_FEES
        assert metrics.get_metric(MetricNames.LAST_RUN_TIMESTAMP) == TEST_NOW
