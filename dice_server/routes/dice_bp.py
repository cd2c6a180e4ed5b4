"""Dice rolling routes."""

from flask import Blueprint, Response, current_app

from ..dice import parse_dice, roll_dice
from ..observability.middleware import current_context

dice_bp = Blueprint("dice", __name__)


def _server():
    return current_app.config["server"]


@dice_bp.route("/roll/<dice>")
def roll(dice):
    """Roll ``NdS`` dice and return the sum as plain text."""
    srv = _server()
    count, sides = parse_dice(dice, srv.dice_rules)
    total = roll_dice(current_context(), count, sides, srv.roll_counter, srv.roller)
    return Response(f"{total}\n", status=200, mimetype="text/plain")
