"""
Mutation safety - policy, snapshots, diffs and batch compilation.
"""

from sheetguard.safety.models import (
    DiffResult,
    DocumentSummary,
    EffectScopeLimits,
    ExpectedState,
    Intent,
    IntentBase,
    MutationStatus,
    MutationSummary,
    PolicyDecision,
    SubmitOptions,
    parse_intents,
)
from sheetguard.safety.diff import DiffEngine
from sheetguard.safety.policy import PolicyEnforcer
from sheetguard.safety.snapshot import SnapshotService
from sheetguard.safety.compiler import BatchCompiler, CompiledCall

__all__ = [
    "DiffResult",
    "DocumentSummary",
    "EffectScopeLimits",
    "ExpectedState",
    "Intent",
    "IntentBase",
    "MutationStatus",
    "MutationSummary",
    "PolicyDecision",
    "SubmitOptions",
    "parse_intents",
    "DiffEngine",
    "PolicyEnforcer",
    "SnapshotService",
    "BatchCompiler",
    "CompiledCall",
]
