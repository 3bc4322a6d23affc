# ==== CLI PACKAGE ==== #

"""
Operator commands for inspecting requests and running escalation sweeps.
"""
