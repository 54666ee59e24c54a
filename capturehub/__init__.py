"""
CaptureHub - Remote packet capture coordination.
"""

__version__ = "0.1.0"
