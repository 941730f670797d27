"""
Flow Kernel

A tenant-scoped workflow orchestration kernel with:
- Versioned, declarative state-machine definitions
- Append-only instance event log
- Human task lifecycle with pluggable assignee resolution
- Idempotent command recording per caller-supplied key
"""

__version__ = "0.1.0"
