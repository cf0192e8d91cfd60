"""Centralized constants for node types, queue keys and event types.

This module provides a single source of truth for node type definitions,
eliminating duplicate string arrays across the codebase.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

# Graph entry points. Never compiled into a Step.
TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    'webhook',
    'timer',
    'sheets',
    'read_rss',
])

TIMER_TRIGGER = 'timer'
SHEETS_TRIGGER = 'sheets'

# =============================================================================
# CONTROL NODE TYPES
# =============================================================================

CONDITION_NODE_TYPE = 'condition'
PARALLEL_NODE_TYPE = 'parallel'

# Edge handle labels emitted by a condition node
TRUE_HANDLE = 'true'
FALSE_HANDLE = 'false'

# =============================================================================
# QUEUE
# =============================================================================

JOB_NAME = 'execute-workflow'
CONFIG_KEY_PREFIX = 'workflow_config'
IMMEDIATE_JOB_PREFIX = 'job'
TIMER_JOB_PREFIX = 'cron_workflow'

# Sheets trigger defaults
DEFAULT_SHEETS_TRIGGER_COLUMN = 5
DEFAULT_SHEETS_TRIGGER_VALUE = 'Pending'
SHEET_HEADER_ROWS = 1

# =============================================================================
# JOB LIFECYCLE EVENTS
# =============================================================================

EVENT_JOB_ACTIVE = 'job_active'
EVENT_JOB_COMPLETED = 'job_completed'
EVENT_JOB_RETRYING = 'job_retrying'
EVENT_JOB_FAILED = 'job_failed'
EVENT_STEP_STARTED = 'step_started'
EVENT_STEP_COMPLETED = 'step_completed'
EVENT_STEP_FAILED = 'step_failed'
EVENT_STEP_SKIPPED = 'step_skipped'


def is_trigger_type(node_type: str) -> bool:
    """Check if a node type is a workflow entry point."""
    return node_type in TRIGGER_NODE_TYPES
