"""
CaptureHub Output

Console rendering for the command line interface.
"""

from capturehub.output.console import CaptureHubConsole, get_console

__all__ = [
    "CaptureHubConsole",
    "get_console",
]
