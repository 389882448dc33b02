"""Centralized constants for schedule types, trigger types and thresholds.

Single source of truth for the string values shared by the models, the
scheduler and the HTTP layer.
"""

from typing import FrozenSet

# =============================================================================
# SCHEDULE TYPES
# =============================================================================

SCHEDULE_TYPES: FrozenSet[str] = frozenset([
    'cron',
    'interval',
    'delay',
    'once',
    'event',
])

# Schedule types the periodic tick may select (event schedules fire only on
# an explicit external trigger)
TIMED_SCHEDULE_TYPES: FrozenSet[str] = SCHEDULE_TYPES - {'event'}

# Schedule types that fire at most once unless configured to repeat
ONE_SHOT_SCHEDULE_TYPES: FrozenSet[str] = frozenset([
    'delay',
    'once',
])

# =============================================================================
# TRIGGER TYPES
# =============================================================================

TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'scheduled',
    'webhook',
    'manual',
    'event',
])

# =============================================================================
# CONDITIONAL NODE TYPES
# =============================================================================

CONDITION_TYPES: FrozenSet[str] = frozenset([
    'if-then-else',
    'switch-case',
    'loop-while',
    'loop-for',
    'simple-condition',
])

COMPARISON_OPERATORS: FrozenSet[str] = frozenset([
    'equals',
    'not_equals',
    'contains',
    'greater_than',
    'less_than',
])

LOGICAL_OPERATORS: FrozenSet[str] = frozenset([
    'and',
    'or',
    'not',
])

# =============================================================================
# LIMITS AND THRESHOLDS
# =============================================================================

DEFAULT_TIMEZONE = 'UTC'

DEFAULT_MAX_ITERATIONS = 100

# Intervals below this are accepted but produce a validation warning
MIN_INTERVAL_WARNING_MS = 60_000

# Number of sample executions returned by schedule validation
VALIDATION_SAMPLE_SIZE = 5

ONE_HOUR_SECONDS = 60 * 60
ONE_DAY_SECONDS = 24 * ONE_HOUR_SECONDS
