"""
Kiosk Survey Edge - offline resource cache and durable submission sync.
"""

__version__ = "1.0.0"
