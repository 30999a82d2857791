"""
Executor module - Runtime engine for workflow executions.

This module contains the execution components:
- graph: TaskGraph validation and ready-set computation
- pool: WorkerPool, capacity shared by every execution of a controller
- dispatcher: Dispatcher, the control loop of one execution
- controller: Controller, the façade callers use

From Dave Cheney: "Package Design"
Package name "executor" describes what it provides (execution engine),
not what it contains (graphs, pools, loops).
"""

from pytaxis.executor.controller import Controller
from pytaxis.executor.dispatcher import Dispatcher
from pytaxis.executor.graph import GraphSummary, TaskGraph, build_graph, ready_set
from pytaxis.executor.pool import WorkerPool

__all__ = [
    # Graph
    "TaskGraph",
    "GraphSummary",
    "build_graph",
    "ready_set",
    # Capacity
    "WorkerPool",
    # Runtime
    "Dispatcher",
    "Controller",
]
