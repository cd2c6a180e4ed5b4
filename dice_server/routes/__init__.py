"""
Flask Blueprints.

Each blueprint accesses the ``DiceServer`` instance via
``current_app.config['server']``.
"""

from .dice_bp import dice_bp
from .observability_bp import observability_bp

__all__ = [
    "dice_bp",
    "observability_bp",
]
