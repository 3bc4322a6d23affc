# ==== SCHEMAS PACKAGE ==== #

"""
Pydantic models for requests, steps, timeline entries and API bodies.
"""
