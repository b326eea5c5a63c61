"""Default limits and intervals for the orchestration engine."""

MAX_CONCURRENT_WORKFLOWS = 5
MAX_DECOMPOSITION_DEPTH = 3

SCAN_INTERVAL_SECONDS = 60.0
PROGRESS_INTERVAL_SECONDS = 30.0
HEARTBEAT_INTERVAL_SECONDS = 120.0
RECONCILIATION_INTERVAL_SECONDS = 300.0

MAX_WORKFLOW_DURATION_SECONDS = 8 * 60 * 60
HEARTBEAT_TIMEOUT_SECONDS = 30 * 60
STATE_REQUEST_TIMEOUT_SECONDS = 1.0

BREAKER_WINDOW_SIZE = 10
BREAKER_MIN_ATTEMPTS = 5
BREAKER_FAILURE_THRESHOLD = 0.5
BREAKER_COOLDOWN_SECONDS = 5 * 60
BREAKER_MAX_COOLDOWN_SECONDS = 60 * 60
BREAKER_BACKOFF_BASE = 2.0

DEFAULT_ESCALATION_DIR = ".stagecraft/escalations"
DEFAULT_LEDGER_PATH = "requests.yaml"

SUB_MARKER = "SUB"
ISSUE_MARKER = "❌"
