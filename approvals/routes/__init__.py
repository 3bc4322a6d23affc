# ==== ROUTES PACKAGE ==== #

"""
FastAPI routers for the workflow HTTP surface.
"""
