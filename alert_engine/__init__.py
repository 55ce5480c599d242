"""
Budget alert and real-time notification engine.
"""

__version__ = "1.0.0"
