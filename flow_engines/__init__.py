"""
Flow engines -- pure calculation layer.

Every function here is deterministic and performs no I/O: no database, no
clock, no logging beyond the FLOW_ENGINE_TRACE record emitted by
``traced_engine``.
"""

from flow_engines.interpreter import initial_snapshot, step
from flow_engines.policy_compiler import compile_policy, policy_rules
from flow_engines.rules import MISSING, evaluate, match_condition, resolve_path
from flow_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "MISSING",
    "compile_policy",
    "compute_input_fingerprint",
    "evaluate",
    "initial_snapshot",
    "match_condition",
    "policy_rules",
    "resolve_path",
    "step",
    "traced_engine",
]
