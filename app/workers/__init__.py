"""
Workers module for background services.

This module contains:
- state_refresher: periodic pull of device state from every vendor into the state cache
"""

__all__ = [
    "RefreshReport",
    "StateRefresher",
]

from app.workers.state_refresher import RefreshReport, StateRefresher
