"""
API Module for the lead routing service.

FastAPI application with routes for:
- Lead intake
- Negotiation pipeline
- Round-robin administration
- Scoring preview
"""

from .main import create_app, app

__all__ = ["create_app", "app"]
