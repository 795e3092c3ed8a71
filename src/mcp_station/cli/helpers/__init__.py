"""
CLI helper functions and utilities.
"""

from .display import packages_table, print_result, render_event
from .errors import handle_errors, parse_assignments

__all__ = [
    'packages_table',
    'print_result',
    'render_event',
    'handle_errors',
    'parse_assignments',
]
