"""Workflow graph reconstruction from conversation history."""

from .models import (
    Artifact, Plan, WorkflowEdge, WorkflowGraph, WorkflowMetadata, WorkflowNode,
    WorkflowToolCall, all_phases, count_artifacts, nodes_by_type, nodes_for_phase,
)
from .builder import build, build_workflow_graph
from .plans import extract_plans
from .tracker import WorkflowTracker, get_workflow_tracker, reset_workflow_trackers
