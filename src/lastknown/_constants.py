"""Internal constants shared across the library."""

#: Primary key of the single durable row holding the latest record.
SINGLETON_ID = 1

#: Cache slot used for the latest observed record.
DEFAULT_CACHE_KEY = "LastInfo"

#: Channel topic carrying freshly observed records.
DEFAULT_TOPIC = "latest-value-observed"

DEFAULT_CONSUMER_GROUP = "lastknown-storage"

USER_AGENT = "lastknown/0.1"

# ------------------------------------------------------------------
# Timeouts (seconds)
# ------------------------------------------------------------------

DEFAULT_ORIGIN_TIMEOUT = 3.0
# Degraded-mode path, kept well below the origin timeout.
DEFAULT_CACHE_TIMEOUT = 0.3
DEFAULT_STORE_TIMEOUT = 1.0
# Slightly below a 5 s client timeout so a response is always sent in time.
DEFAULT_REQUEST_DEADLINE = 4.9
