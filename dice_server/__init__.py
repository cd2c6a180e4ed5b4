"""
dice-server - Dice rolling HTTP service with OpenTelemetry-style traces and metrics
"""

__version__ = "0.1.0"

from .web_server import DiceServer

__all__ = [
    "DiceServer",
]
