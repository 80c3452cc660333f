"""
Process execution backend.
"""

from toolguard.sandbox.local import OutputCollector, ProcessGroup, ProcessRunner, ProcessState

__all__ = [
    "ProcessRunner",
    "ProcessGroup",
    "ProcessState",
    "OutputCollector",
]
