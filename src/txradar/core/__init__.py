"""
Core Layer - Mempool lifecycle and pipeline orchestration.

This module provides:
    - Domain models: Transaction, AnalyzedTx, MempoolEntry, ScoredTx, ...
    - Lifecycle events: TxAdded, TxRemoved, BlockConnected, BlockDisconnected
    - parse_transaction: Raw transaction decoding (legacy and segwit)
    - build_analyzed_tx: Prevout economics (integer sums, coin-days destroyed)
    - MempoolStateMachine: Authoritative lifecycle registry
    - SequenceTracker: Feed sequence gap / duplicate detection
    - EventPublisher: Fan-out of scores, transitions and stats
    - StatsBatcher: Count-or-time batching of stats snapshots
    - PipelineOrchestrator: Events -> state -> resolver -> engine -> publisher
    - BackgroundTasksManager: Manages async background loops

Data Flow:
    1. Feed delivers a lifecycle event
    2. SequenceTracker checks ordering (gap -> resync)
    3. MempoolStateMachine applies the transition
    4. PrevoutResolver resolves inputs of added transactions
    5. SignalEngine scores the analysis
    6. EventPublisher fans results out to subscribers
"""

# Models
from .models import (
    SATS_PER_BTC,
    AlertTier,
    AnalyzedTx,
    ExchangeFlow,
    LifecycleTransition,
    MempoolEntry,
    MempoolStats,
    PrevoutRecord,
    PrevoutResult,
    RemovalReason,
    RuleResult,
    ScoredTx,
    Transaction,
    TransitionKind,
    TxInput,
    TxOutput,
    TxState,
    UnresolvedPrevout,
    UnresolvedReason,
)

# Events
from .events import BlockConnected, BlockDisconnected, LifecycleEvent, TxAdded, TxRemoved

# Parsing and analysis
from .tx_parser import MalformedTransactionError, classify_script, parse_transaction, parse_transaction_hex
from .analyzer import build_analyzed_tx, pending_analysis

# State machine
from .mempool import DEFAULT_FEE_BUCKETS, MempoolStateMachine, SequenceCheck, SequenceTracker

# Publication and stats
from .publisher import EventPublisher, Subscription
from .stats import PipelineStats, StatsBatcher

# Orchestration
from .pipeline import PipelineOrchestrator
from .background_tasks import BackgroundTaskConfig, BackgroundTasksManager

__all__ = [
    # Models
    "SATS_PER_BTC",
    "AlertTier",
    "AnalyzedTx",
    "ExchangeFlow",
    "LifecycleTransition",
    "MempoolEntry",
    "MempoolStats",
    "PrevoutRecord",
    "PrevoutResult",
    "RemovalReason",
    "RuleResult",
    "ScoredTx",
    "Transaction",
    "TransitionKind",
    "TxInput",
    "TxOutput",
    "TxState",
    "UnresolvedPrevout",
    "UnresolvedReason",
    # Events
    "BlockConnected",
    "BlockDisconnected",
    "LifecycleEvent",
    "TxAdded",
    "TxRemoved",
    # Parsing and analysis
    "MalformedTransactionError",
    "classify_script",
    "parse_transaction",
    "parse_transaction_hex",
    "build_analyzed_tx",
    "pending_analysis",
    # State machine
    "DEFAULT_FEE_BUCKETS",
    "MempoolStateMachine",
    "SequenceCheck",
    "SequenceTracker",
    # Publication and stats
    "EventPublisher",
    "Subscription",
    "PipelineStats",
    "StatsBatcher",
    # Orchestration
    "PipelineOrchestrator",
    "BackgroundTaskConfig",
    "BackgroundTasksManager",
]
