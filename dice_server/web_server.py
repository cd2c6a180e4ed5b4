"""
Web server for the dice-rolling service.

Every request is wrapped in a SERVER span by ``RequestTracer``; the
``ErrorTracker`` boundary turns handler crashes into 500 responses so
they never escape the instrumentation.
"""

import threading
import time
from typing import Any, Dict, Iterable, Optional

from flask import Flask

from .constants import APP_NAME, DEFAULT_HOST, DEFAULT_PORT, INSTRUMENTATION_NAME
from .dice import DiceRules, make_roller
from .observability import registry
from .observability.errors import ErrorTracker
from .observability.logging import setup_structured_logger
from .observability.metrics import Observation
from .observability.middleware import RequestTracer
from .observability.propagation import TextMapPropagator
from .observability.tracing import Tracer
from .routes import dice_bp, observability_bp


class DiceServer:
    """Flask application that rolls dice and emits traces and metrics."""

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        tracer: Optional[Tracer] = None,
        meter: Any = None,
        propagator: Optional[TextMapPropagator] = None,
        roller: Any = None,
    ):
        """Initialise the Flask web server.

        Args:
            config: Loaded configuration dict.
            tracer: Tracer for request spans (global proxy if omitted).
            meter: Meter for instruments (global proxy if omitted).
            propagator: Header propagator (global one if omitted).
            roller: Dice roller (built from ``dice.distribution`` if omitted).

        Raises:
            InstrumentError: An instrument could not be created.
        """
        self.config = config
        debug_mode = self.config.get("logging", {}).get("debug", False)
        self.logger = setup_structured_logger("web_server", "web_server.log", debug=debug_mode)
        self.start_time = time.time()

        meter = meter or registry.get_meter(INSTRUMENTATION_NAME)
        tracer = tracer or registry.get_tracer(INSTRUMENTATION_NAME)

        self.dice_rules = DiceRules.from_config(self.config)
        self.roller = roller or make_roller(self.config.get("dice", {}).get("distribution", "zipf"))

        # Instrument creation failures are fatal at startup
        self.roll_counter = meter.create_counter(
            "dice_rolls", unit="{roll}", description="Individual die rolls by face value."
        )
        meter.create_observable_gauge(
            "process.uptime", [self._observe_uptime], unit="s", description="Seconds since start."
        )
        meter.create_observable_gauge(
            "process.thread.count",
            [self._observe_threads],
            unit="{thread}",
            description="Live Python threads.",
        )

        self.app = Flask(__name__)
        self.app.config["server"] = self
        self.tracer_middleware = RequestTracer(
            self.app, tracer=tracer, meter=meter, propagator=propagator, logger=self.logger
        )
        self.error_tracker = ErrorTracker()
        self.error_tracker.install_flask(self.app)
        self._register_blueprints()

        self.logger.info("DiceServer initialized")

    def _register_blueprints(self):
        for bp in (dice_bp, observability_bp):
            self.app.register_blueprint(bp)

    # ── Gauges ───────────────────────────────────────────────────

    def _observe_uptime(self) -> Iterable[Observation]:
        return [Observation(time.time() - self.start_time)]

    def _observe_threads(self) -> Iterable[Observation]:
        return [Observation(threading.active_count())]

    # ── Run ──────────────────────────────────────────────────────

    def run(self, host: str = None, port: int = None):
        """Start the threaded Werkzeug server (blocking)."""
        server_conf = self.config.get("server", {})
        host = host or server_conf.get("host", DEFAULT_HOST)
        port = port or server_conf.get("port", DEFAULT_PORT)

        self.logger.info("Starting %s on %s:%s", APP_NAME, host, port)
        print(f"\n🎲 {APP_NAME} starting...")
        print(f"🔗 URL: http://{host}:{port}/roll/2d20")
        print("\nPress Ctrl+C to stop\n")

        self.app.run(host=host, port=int(port), debug=False, threaded=True)
