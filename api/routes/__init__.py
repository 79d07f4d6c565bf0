"""
API Routes for the lead routing service.
"""

from . import leads, negotiations, round_robin, scoring

__all__ = ["leads", "negotiations", "round_robin", "scoring"]
