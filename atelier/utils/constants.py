"""
Constants for the Atelier workshop production engine.

This module defines system-wide constants including:
- Application metadata
- Material units
- Engine tuning defaults (reservations, costing, scoring)
- Environment variable names used by the configuration layer
"""

from typing import Dict, List

# ============================================================================
# Application Metadata
# ============================================================================

APP_NAME = "Atelier Production Engine"
APP_VERSION = "0.1.0"
DATABASE_VERSION = "1.0"
DATABASE_FILENAME = "atelier.db"

# ============================================================================
# Material Units
# ============================================================================

# Length units (fabric, trims, thread)
LENGTH_UNITS: List[str] = [
    "m",  # Metre
    "cm",  # Centimetre
    "yard",  # Yard
]

# Count/discrete units (buttons, zippers, labels)
COUNT_UNITS: List[str] = [
    "each",
    "piece",
    "pair",
    "spool",
    "roll",
]

WEIGHT_UNITS: List[str] = [
    "g",
    "kg",
]

ALL_UNITS: List[str] = LENGTH_UNITS + COUNT_UNITS + WEIGHT_UNITS

# ============================================================================
# Order Defaults
# ============================================================================

DEFAULT_CURRENCY = "KWD"
ORDER_NUMBER_PREFIX = "WS"
ORDER_PRIORITIES: List[str] = ["low", "normal", "high", "urgent"]

# Ordinal used when ranking orders or stages by priority
PRIORITY_RANK: Dict[str, int] = {
    "low": 0,
    "normal": 1,
    "high": 2,
    "urgent": 3,
}

# ============================================================================
# Engine Defaults
# ============================================================================

DEFAULT_RESERVATION_TTL_DAYS = 7
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
DEFAULT_SWEEP_MAX_ATTEMPTS = 3
DEFAULT_SWEEP_BACKOFF_SECONDS = 0.5
DEFAULT_CANCEL_RETRY_ATTEMPTS = 3

DEFAULT_LABOR_COST_PER_UNIT = "20.00"
DEFAULT_OVERHEAD_RATE = "0.15"
DEFAULT_COST_TOLERANCE = 0.10

# Progress shown once production starts (non-zero marks "started")
DEFAULT_INITIAL_PROGRESS = 5

# Efficiency values are stored raw; this range only applies for display
DEFAULT_EFFICIENCY_DISPLAY_MIN = 0.0
DEFAULT_EFFICIENCY_DISPLAY_MAX = 200.0

DEFAULT_QUALITY_SCORE = 8
DEFAULT_BONUS_SCORE_THRESHOLD = 100.0

# Worker ranking keys, applied in order (all descending), before the
# least-recently-assigned tie-break
DEFAULT_ASSIGNMENT_RANKING: List[str] = [
    "is_primary_assignment",
    "efficiency_rating",
    "priority_level",
]
ASSIGNMENT_RANKING_KEYS: List[str] = [
    "is_primary_assignment",
    "efficiency_rating",
    "priority_level",
    "experience_months",
    "skill_level",
]

# Efficiency multiplier bounds written back to worker assignments
EFFICIENCY_RATING_MIN = 0.5
EFFICIENCY_RATING_MAX = 2.0

# ============================================================================
# Environment Variables
# ============================================================================

ENV_ENVIRONMENT = "ATELIER_ENV"
ENV_DATABASE_URL = "ATELIER_DATABASE_URL"
ENV_LOG_LEVEL = "ATELIER_LOG_LEVEL"
ENV_RESERVATION_TTL_DAYS = "ATELIER_RESERVATION_TTL_DAYS"
ENV_SWEEP_INTERVAL = "ATELIER_SWEEP_INTERVAL_SECONDS"
ENV_LABOR_COST = "ATELIER_LABOR_COST_PER_UNIT"
ENV_OVERHEAD_RATE = "ATELIER_OVERHEAD_RATE"
ENV_COST_TOLERANCE = "ATELIER_COST_TOLERANCE"
ENV_ASSIGNMENT_RANKING = "ATELIER_ASSIGNMENT_RANKING"
