"""
RelayWatch: keeps a network relay worker alive and holds it to a traffic quota.
"""

__version__ = "0.1.0"
