"""Sandbox/release records and the execution ledger."""

from state.models import Execution, ExecutionLogLine, OwnerRef, Release, Sandbox
from state.store import Store

__all__ = [
    'Execution',
    'ExecutionLogLine',
    'OwnerRef',
    'Release',
    'Sandbox',
    'Store',
]
