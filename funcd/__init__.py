"""
funcd - HTTP gateway for a single lazily started Unix-socket backend.
"""

__version__ = "0.1.0"
