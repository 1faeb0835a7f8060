"""Engine-wide defaults."""

DEFAULT_LEASE_SECONDS = 300
DEFAULT_BATCH_SIZE = 50
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_CONCURRENCY = 10
DEFAULT_MAX_STEPS_PER_CLAIM = 50

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MAX_DELAY_SECONDS = 3600.0
DEFAULT_JITTER = 0.1

DEFAULT_SEND_TIMEOUT_SECONDS = 10.0

# SendGrid rejects event webhooks older or newer than ten minutes.
SIGNATURE_REPLAY_WINDOW_SECONDS = 600

SMS_OPT_OUT_KEYWORDS = (
    "stop",
    "stopall",
    "unsubscribe",
    "cancel",
    "end",
    "quit",
    "arret",
    "stopp",
)

EMAIL_OPT_OUT_KEYWORDS = (
    "unsubscribe",
    "opt-out",
    "opt out",
    "remove me",
    "do not contact",
    "stop sending",
)

# Business event emitted when a lead has not replied within a wait's deadline.
NO_REPLY_EVENT_TYPE = "no_reply_after_hours"
DEFAULT_NO_REPLY_BATCH_SIZE = 50
