# ==== APPROVAL WORKFLOWS PACKAGE ==== #

"""
Approval workflow service: multi-step approvals with parallel groups,
timeout escalation, return-for-correction and an append-only timeline.
"""
