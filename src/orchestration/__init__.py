"""Orchestration Layer - schedules and runs reallocation workflows.

This module provides the periodic scheduler and the workflow object that
wires oracle, decision engine, executor and record store together.
"""

from src.orchestration.scheduler import ReallocationScheduler
from src.orchestration.workflows import ReallocationWorkflow

__all__ = [
    "ReallocationScheduler",
    "ReallocationWorkflow",
]
