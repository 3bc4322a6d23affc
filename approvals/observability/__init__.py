# ==== OBSERVABILITY PACKAGE ==== #

"""
Logging, metrics and tracing helpers.
"""
