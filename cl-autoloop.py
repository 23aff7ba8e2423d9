#!/usr/bin/env python3
"""
cl-autoloop: An autonomous liquidity manager plugin for Core Lightning

This plugin watches channel balances and keeps them inside operator-defined
bands by dispatching loop out swaps through an external swap service.

CONTROL LOOP:
-------------
On every tick (interval timer, or autoloop-force on test networks):
1. Fetch the swap server's restrictions and the swap history
2. Apply per-channel and per-peer threshold rules to current balances
3. Drop candidates blocked by in-flight or recently failed swaps
4. Quote the rest and check them against the fee limits
5. Dispatch the largest swaps that fit the in-flight limit and fee budget

Nothing is dispatched until the operator sets autoloop=true; until then
each cycle only logs what it would have done.

Dependencies:
- pyln-client: Core Lightning plugin framework
- A swap service plugin exposing swap-restrictions, swap-list,
  swap-quote-out and swap-out

License: MIT
"""

import signal
import threading
from typing import Dict, Optional, Any

from pyln.client import Plugin

# Import our modules
from modules.autoloop import AutoloopManager, AutoloopCancelled
from modules.clients import SwapServiceClient, NodeClient
from modules.config import Config
from modules.database import Database
from modules.metrics import PrometheusExporter
from modules.parameters import Parameters, ParameterValidationError
from modules.rules import ThresholdRule, SCOPE_CHANNEL, SCOPE_PEER
from modules.scheduler import ForceTicker, SystemClock
from modules.swaps import CollaboratorError, normalize_scid


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Set by the SIGTERM handler. The run loop checks it while idle and before
# every collaborator call, so `lightning-cli plugin stop` never waits for
# the next interval.

shutdown_event = threading.Event()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# The run loop thread and RPC handlers share one lightningd connection.
# pyln-client's RPC is not safe for concurrent calls, so serialize them.

RPC_LOCK = threading.RLock()


class ThreadSafeRpcProxy:
    """Serializes every call on the wrapped LightningRpc behind RPC_LOCK."""

    def __init__(self, rpc):
        self._rpc = rpc

    def call(self, method_name: str, payload: Any = None, **kwargs):
        with RPC_LOCK:
            return self._rpc.call(method_name, payload, **kwargs)

    def __getattr__(self, name):
        attr = getattr(self._rpc, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            with RPC_LOCK:
                return attr(*args, **kwargs)

        return wrapper


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin):
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
manager: Optional[AutoloopManager] = None
ticker: Optional[ForceTicker] = None
metrics_exporter: Optional[PrometheusExporter] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None
network: str = 'bitcoin'


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='autoloop-db-path',
    default='~/.lightning/autoloop.db',
    description='Path to the SQLite database for parameters and the dispatch log'
)

plugin.add_option(
    name='autoloop-interval',
    default='600',
    description='Seconds between autoloop cycles (default: 10 minutes)'
)

plugin.add_option(
    name='autoloop-min-confirmations',
    default='9',
    description='Lowest sweep confirmation target operators may configure (default: 9)'
)

plugin.add_option(
    name='autoloop-enable-debug-rpc',
    default='false',
    description='Enable autoloop-force (refused on mainnet regardless)'
)

plugin.add_option(
    name='autoloop-enable-prometheus',
    default='false',
    description='Expose Prometheus metrics over HTTP'
)

plugin.add_option(
    name='autoloop-prometheus-port',
    default='9810',
    description='Port for the Prometheus metrics endpoint (default: 9810)'
)

plugin.add_option(
    name='autoloop-dispatch-retention-days',
    default='90',
    description='Days of dispatch log to keep (default: 90)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the autoloop plugin.

    1. Parse and validate options
    2. Initialize the database and restore persisted parameters
    3. Build the collaborator clients and the manager
    4. Start the ticker and the run loop thread
    """
    global config, database, manager, ticker, metrics_exporter, safe_plugin, network

    plugin.log("Initializing cl-autoloop plugin...")

    config = Config.from_options(options)
    network = configuration.get('network', 'bitcoin')

    plugin.log(f"Configuration loaded: interval={config.autoloop_interval}s, "
               f"min_confirmations={config.min_confirmations}, network={network}")

    safe_plugin = ThreadSafePluginProxy(plugin)

    database = Database(config.db_path, safe_plugin)
    database.initialize()
    database.cleanup_old_dispatches(days_to_keep=config.dispatch_retention_days)

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=safe_plugin)
        if not metrics_exporter.start_server():
            plugin.log("Prometheus metrics disabled due to server startup failure", level='warn')
            metrics_exporter = None
    else:
        metrics_exporter = None
        plugin.log("Prometheus metrics exporter disabled by configuration")

    ticker = ForceTicker(config.autoloop_interval)
    manager = AutoloopManager(
        safe_plugin,
        SwapServiceClient(safe_plugin),
        NodeClient(safe_plugin),
        SystemClock(),
        ticker,
        database=database,
        metrics=metrics_exporter,
        min_confirmations=config.min_confirmations,
    )

    def restore_parameters():
        """Re-apply persisted parameters once the swap service is reachable."""
        try:
            manager.restore_parameters()
        except (ParameterValidationError, CollaboratorError) as e:
            plugin.log(f"Stored autoloop parameters not applied, keeping defaults: {e}",
                       level='warn')

    def autoloop_loop():
        """Background thread: restore parameters, then run until shutdown."""
        restore_parameters()
        ticker.start()
        result = manager.run(shutdown_event)
        ticker.stop()
        plugin.log(f"Autoloop run loop exited: {result.value}")

    # =========================================================================
    # SIGNAL HANDLER: Clean Shutdown on `lightning-cli plugin stop`
    # =========================================================================
    def handle_shutdown_signal(signum, frame):
        """Set shutdown_event so the run loop exits at its next check."""
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if metrics_exporter:
            try:
                metrics_exporter.stop_server()
            except OSError as e:
                plugin.log(f"Error stopping metrics server: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    threading.Thread(target=autoloop_loop, daemon=True, name="autoloop").start()

    plugin.log("cl-autoloop plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS
# =============================================================================

def _parameters_view(params: Parameters) -> Dict[str, Any]:
    return {"version": database.get_parameters_version(), **params.to_dict()}


def _apply(params: Parameters) -> Dict[str, Any]:
    try:
        manager.set_parameters(params)
    except ParameterValidationError as e:
        return {"error": f"Invalid parameters: {e}"}
    except CollaboratorError as e:
        return {"error": f"Could not validate parameters: {e}"}
    return {"status": "success", "parameters": _parameters_view(manager.get_parameters())}


@plugin.method("autoloop-status")
def autoloop_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Show the manager state, the active parameters and the last cycle.

    Usage: lightning-cli autoloop-status
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}

    params = manager.get_parameters()
    last = manager.last_cycle
    return {
        "state": manager.state.value,
        "autoloop": params.autoloop,
        "interval_seconds": config.autoloop_interval,
        "fee_budget_sats": params.fee_budget,
        "max_autoloop_in_flight": params.max_autoloop_in_flight,
        "channel_rules": len(params.channel_rules),
        "peer_rules": len(params.peer_rules),
        "last_cycle": last.to_dict() if last else None,
    }


@plugin.method("autoloop-get-params")
def autoloop_get_params(plugin: Plugin) -> Dict[str, Any]:
    """
    Show the active autoloop parameters.

    Usage: lightning-cli autoloop-get-params
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}
    return _parameters_view(manager.get_parameters())


@plugin.method("autoloop-set-params")
def autoloop_set_params(plugin: Plugin, key: str, value: str) -> Dict[str, Any]:
    """
    Change one scalar autoloop parameter.

    Usage: lightning-cli autoloop-set-params key value
    Example: lightning-cli autoloop-set-params fee_budget 50000
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}

    if key in ('channel_rules', 'peer_rules'):
        return {"error": "Use autoloop-set-rule / autoloop-clear-rule to change rules"}

    try:
        if key in ('client_minimum', 'client_maximum'):
            current = manager.get_parameters().client_restrictions
            restrictions = current.to_dict()
            restrictions['minimum_sats' if key == 'client_minimum' else 'maximum_sats'] = int(value)
            params = manager.get_parameters().with_updates(
                {'client_restrictions': restrictions}
            )
        else:
            params = manager.get_parameters().with_updates({key: value})
    except (ParameterValidationError, ValueError) as e:
        return {"error": str(e)}

    return _apply(params)


@plugin.method("autoloop-set-rule")
def autoloop_set_rule(plugin: Plugin, scope: str, id: str,
                      incoming: int, outgoing: int) -> Dict[str, Any]:
    """
    Set a threshold rule for a channel or a peer.

    Usage: lightning-cli autoloop-set-rule channel|peer id incoming_pct outgoing_pct
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}

    try:
        rule = ThresholdRule(minimum_incoming=int(incoming), minimum_outgoing=int(outgoing))
    except ValueError:
        return {"error": "incoming and outgoing must be integer percentages"}

    params = manager.get_parameters()
    if scope == SCOPE_CHANNEL:
        rules = dict(params.channel_rules)
        rules[normalize_scid(id)] = rule
        params = params.with_updates({'channel_rules': rules})
    elif scope == SCOPE_PEER:
        rules = dict(params.peer_rules)
        rules[id] = rule
        params = params.with_updates({'peer_rules': rules})
    else:
        return {"error": f"scope must be '{SCOPE_CHANNEL}' or '{SCOPE_PEER}'"}

    return _apply(params)


@plugin.method("autoloop-clear-rule")
def autoloop_clear_rule(plugin: Plugin, scope: str, id: str) -> Dict[str, Any]:
    """
    Remove the threshold rule for a channel or a peer.

    Usage: lightning-cli autoloop-clear-rule channel|peer id
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}

    params = manager.get_parameters()
    if scope == SCOPE_CHANNEL:
        key, rules, target = 'channel_rules', dict(params.channel_rules), normalize_scid(id)
    elif scope == SCOPE_PEER:
        key, rules, target = 'peer_rules', dict(params.peer_rules), id
    else:
        return {"error": f"scope must be '{SCOPE_CHANNEL}' or '{SCOPE_PEER}'"}

    if rules.pop(target, None) is None:
        return {"error": f"No {scope} rule for {target}"}

    return _apply(params.with_updates({key: rules}))


@plugin.method("autoloop-suggest")
def autoloop_suggest(plugin: Plugin) -> Dict[str, Any]:
    """
    Show the swaps the current parameters would select, without dispatching.

    Usage: lightning-cli autoloop-suggest
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}

    try:
        result = manager.suggest_swaps(autoloop=False, shutdown_event=shutdown_event)
    except CollaboratorError as e:
        return {"error": str(e)}
    except AutoloopCancelled:
        return {"error": "Plugin is shutting down"}
    return result.to_dict()


@plugin.method("autoloop-history")
def autoloop_history(plugin: Plugin, limit: int = 20) -> Dict[str, Any]:
    """
    Show recent dispatch attempts.

    Usage: lightning-cli autoloop-history [limit]
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}
    try:
        limit = int(limit)
    except ValueError:
        return {"error": "limit must be an integer"}
    return {"dispatches": database.get_recent_dispatches(limit=limit)}


@plugin.method("autoloop-force")
def autoloop_force(plugin: Plugin) -> Dict[str, Any]:
    """
    Trigger an autoloop cycle now. Debug only, never available on mainnet.

    Usage: lightning-cli autoloop-force
    """
    if manager is None:
        return {"error": "Plugin not fully initialized"}
    if not config.debug_rpc_allowed(network):
        return {"error": "autoloop-force requires autoloop-enable-debug-rpc "
                         "and a non-mainnet network"}
    manager.force_autoloop()
    return {"status": "forced"}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
