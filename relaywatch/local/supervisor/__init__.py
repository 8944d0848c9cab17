"""
The Supervisor package.
Keeps the relay worker alive and enforces the traffic quota.

This package contains the central Supervisor class and its helper modules,
which together handle the usage ledger, launching and stopping the worker,
and the periodic usage monitor.
"""
from .supervisor import Supervisor, SupervisorState
from .process_utils import SupervisorMode

__all__ = ['Supervisor', 'SupervisorState', 'SupervisorMode']
