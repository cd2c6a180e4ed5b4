"""
Centralised constants for the dice-server application.

All magic numbers, defaults and thresholds live here so they can be
imported by any module without circular dependencies.
"""

# ── Version ──────────────────────────────────────────────────────
APP_NAME = "dice-server"
APP_VERSION = "0.1.0"

# ── Default paths ────────────────────────────────────────────────
DEFAULT_CONFIG_PATH = "config.json"

# ── HTTP ─────────────────────────────────────────────────────────
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080

# ── Logging ──────────────────────────────────────────────────────
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB per log file
LOG_BACKUP_COUNT = 5

# ── Dice ─────────────────────────────────────────────────────────
DEFAULT_FORBIDDEN_VALUES = frozenset({4})
# Counts and sides are parsed as signed 8-bit integers
DEFAULT_MAX_DICE_VALUE = 127
ZIPF_S = 2.0
ZIPF_V = 1.0

# ── Telemetry ────────────────────────────────────────────────────
INSTRUMENTATION_NAME = "dice_server"
DEFAULT_OTLP_ENDPOINT = "http://localhost:4318"
OTLP_PROTOCOL_HTTP = "http/protobuf"
OTLP_PROTOCOL_GRPC = "grpc"
OTLP_PROTOCOLS = (OTLP_PROTOCOL_HTTP, OTLP_PROTOCOL_GRPC)
DEFAULT_OTLP_PROTOCOL = OTLP_PROTOCOL_HTTP
DEFAULT_OTLP_TIMEOUT_SECONDS = 10.0
DEFAULT_EXPORT_INTERVAL_SECONDS = 10.0

# Batch span processor
DEFAULT_MAX_QUEUE_SIZE = 2048
DEFAULT_SCHEDULE_DELAY_SECONDS = 5.0
DEFAULT_MAX_EXPORT_BATCH_SIZE = 512

# Explicit histogram bucket boundaries (OTel SDK defaults)
DEFAULT_HISTOGRAM_BOUNDARIES: tuple = (
    0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0,
    500.0, 750.0, 1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
)
# Request latency buckets (seconds)
HTTP_DURATION_BOUNDARIES: tuple = (
    0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0,
)

# W3C baggage limits
BAGGAGE_MAX_HEADER_LENGTH = 8192
BAGGAGE_MAX_PAIRS = 180

# ── Error tracking ───────────────────────────────────────────────
MAX_ERROR_BUFFER = 200
