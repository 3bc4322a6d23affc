# ==== MIDDLEWARE PACKAGE ==== #

"""
HTTP middleware for correlation ids and request latency.
"""
