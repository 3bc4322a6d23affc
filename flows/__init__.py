# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for the approval workflow engine.

- escalation_sweep_flow: scheduled sweep that escalates overdue steps
"""

from .escalation_sweep_flow import escalation_sweep_flow

__all__ = [
    "escalation_sweep_flow",
]
