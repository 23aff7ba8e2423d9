"""
cl-autoloop modules package

This package contains the core modules for the autoloop plugin:
- swaps: Swap records, quotes and dispatch requests
- parameters: Operator parameters and their validation
- restrictions: Server and client swap size limits
- balances: Per-channel and per-peer balance snapshots
- rules: Threshold rules and swap amount calculation
- eligibility: In-flight and failure backoff filtering
- budget: Fee budget accounting
- autoloop: The manager that ties the cycle together
- scheduler: Interval/force ticker and clock
- clients: Swap service and lightningd adapters
- config: Plugin options
- database: SQLite storage layer
- metrics: Prometheus exporter
"""

from .autoloop import AutoloopManager, AutoloopCancelled, CycleResult, ManagerState, RunResult
from .config import Config
from .database import Database
from .parameters import Parameters, ParameterValidationError, DEFAULT_PARAMETERS
from .rules import ThresholdRule
from .swaps import CollaboratorError, SwapType

__all__ = [
    'AutoloopManager',
    'AutoloopCancelled',
    'CycleResult',
    'ManagerState',
    'RunResult',
    'Config',
    'Database',
    'Parameters',
    'ParameterValidationError',
    'DEFAULT_PARAMETERS',
    'ThresholdRule',
    'CollaboratorError',
    'SwapType',
]
