"""
Operator tools for changeflow.

Invariants:
    - Tools work without a running server
    - replay runs the same idempotent pipeline as the workers
"""

from .inspect_cli import InspectCLI

__all__ = ["InspectCLI"]
