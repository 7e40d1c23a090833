"""
Core plumbing shared by the fleet tools.

Contains:
- errors.py: Exception taxonomy
- polling.py: Bounded waits and retries with backoff
- store.py: Coordination store backends
- spec.py: Specification model
- ids.py: CB58 identifiers
- services.py: HTTP / JSON-RPC client
- config.py: Agent settings loader
- atomic_ops.py: Crash-safe file writes
"""

__version__ = "0.1.0"
