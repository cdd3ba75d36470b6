"""
Shared constants for OptiFlow.
Imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "OptiFlow"
APP_SLUG = "optiflow"
APP_VERSION = "2.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_HOME = pathlib.Path(os.environ.get("OPTIFLOW_HOME", str(HOME / ".optiflow")))
DB_PATH = APP_HOME / "optiflow.db"
CONFIG_PATH = APP_HOME / "config.json"
LOG_DIR = APP_HOME / "logs"

# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRY = "retry"

VALID_STATUSES = (
    JobStatus.PENDING,
    JobStatus.PROCESSING,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.RETRY,
)

# "In flight": at most one of these per subject
IN_FLIGHT_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRY)
DUE_STATUSES = (JobStatus.PENDING, JobStatus.RETRY)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# ── Job priority values (higher rank is claimed first) ────────────────
class JobPriority:
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
}

# ── Webhook delivery queue status ─────────────────────────────────────
class DeliveryStatus:
    PENDING = "pending"
    FAILED = "failed"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Caller errors (never retried)
    VALIDATION = "ERR_VALIDATION"
    ALREADY_QUEUED = "ERR_ALREADY_QUEUED"
    INVALID_STATUS = "ERR_INVALID_STATUS"

    # Delivery errors
    DELIVERY_TRANSIENT = "ERR_DELIVERY_TRANSIENT"
    DELIVERY_PERMANENT = "ERR_DELIVERY_PERMANENT"
    DELIVERY_TIMEOUT = "ERR_DELIVERY_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"

    # Job lifecycle
    JOB_TIMEOUT = "ERR_JOB_TIMEOUT"
    EXHAUSTED_RETRIES = "ERR_EXHAUSTED_RETRIES"

RETRYABLE_ERRORS = {
    ErrorCode.DELIVERY_TRANSIENT,
    ErrorCode.DELIVERY_TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.JOB_TIMEOUT,
}

# ── Payload schema ────────────────────────────────────────────────────
PAYLOAD_VERSION = 1
SCORE_MIN = 0
SCORE_MAX = 100

# ── Dispatcher defaults ───────────────────────────────────────────────
DEFAULT_BATCH_SIZE = 5
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SEC = 60          # linear: delay * attempts
DEFAULT_MAX_EXECUTION_SEC = 120
DEFAULT_INTER_JOB_PAUSE_SEC = 2
DEFAULT_PROCESS_INTERVAL_SEC = 300    # 5 minutes
DEFAULT_TARGET_SCORE = 90
DEFAULT_RETENTION_DAYS = 30
DEFAULT_STUCK_TIMEOUT_SEC = 3600
DISPATCHER_LEASE = "dispatcher"

# ── Webhook defaults ──────────────────────────────────────────────────
DEFAULT_HTTP_TIMEOUT_SEC = 30
DEFAULT_WEBHOOK_MAX_RETRIES = 3       # immediate attempts, 2^(n-1) s apart
DEFAULT_WEBHOOK_QUEUE_MAX_ATTEMPTS = 10
DEFAULT_WEBHOOK_RETRY_BASE_SEC = 60   # exponential: 2^attempts * base
DEFAULT_WEBHOOK_QUEUE_BATCH = 10

# ── Cache ─────────────────────────────────────────────────────────────
DEFAULT_CACHE_TTL_SEC = 3600
OPTIMIZATION_CACHE_PREFIX = "optimization_"

# ── Automation service ────────────────────────────────────────────────
AUTOMATION_OPTIMIZE_PATH = "webhook/optimize"

# ── Outbound headers ──────────────────────────────────────────────────
HEADER_VERSION = "X-OptiFlow-Version"
HEADER_SITE = "X-OptiFlow-Site"
