"""
API routers for the alert engine.
"""
