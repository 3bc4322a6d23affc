# ==== RESILIENCE PACKAGE ==== #

"""
Retry policies for compare-and-swap reloads and webhook delivery.
"""
