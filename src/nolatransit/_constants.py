"""Internal constants shared across the pipeline."""

FEED_URL = "https://nolatransit.fly.dev/sse"
USER_AGENT = "nolatransit/0.1"

DEFAULT_RECONNECT_DELAY_MS = 5000
DEFAULT_FLUSH_INTERVAL = 60.0
DEFAULT_STATS_INTERVAL = 60.0

DEFAULT_FRAGMENT_PREFIX = "transit"
FRAGMENT_SUFFIX = ".parquet"
CONSOLIDATED_PREFIX = "daily/"

# S3 DeleteObjects accepts at most 1000 keys per request.
DELETE_BATCH_SIZE = 1000

DEFAULT_SCHEDULE_HOURS: tuple[int, ...] = (6, 18)

# Route code the feed uses for vehicles not assigned to a route.
UNASSIGNED_ROUTE = "U"
DEFAULT_MIN_ROUTE_READINGS = 50
