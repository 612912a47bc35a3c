"""
changewatch - web page watches with change detection and notifications.
"""

__version__ = "0.1.0"
