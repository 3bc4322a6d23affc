# ==== SERVICES PACKAGE ==== #

"""
Workflow engine, step resolution, escalation, notifications and timeline.

The state machine module is pure; every other service is wired together
by ``approvals.services.factory``.
"""
