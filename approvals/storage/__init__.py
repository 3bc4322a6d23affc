# ==== STORAGE PACKAGE ==== #

"""
Database setup, ORM models and request store implementations.
"""
