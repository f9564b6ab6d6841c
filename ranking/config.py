"""
Configuration settings for the feed ranking pipeline
"""

# Cache settings
FEED_CACHE_TTL_SECONDS = 5 * 60
SIMILAR_USERS_TTL_SECONDS = 7 * 24 * 60 * 60
CONTENT_SCORE_TTL_SECONDS = 60 * 60
CACHE_OPERATION_TIMEOUT_SECONDS = 0.5
CACHE_SOCKET_TIMEOUT_SECONDS = 2

# Graceful invalidation
INVALIDATION_BATCH_SIZE = 100
INVALIDATION_DELAY_SECONDS = 0.5

# Stampede detection
STAMPEDE_THRESHOLD = 10

# Circuit breaker
FAILURE_THRESHOLD = 5
RESET_TIMEOUT_MS = 60000

# Candidate collection
CANDIDATE_MULTIPLIER = 5
MAX_CANDIDATES = 1000

# Monitoring
SAMPLE_CAPACITY = 1000
ALERT_INTERVAL_SECONDS = 60

# Request bounds enforced by the HTTP layer
DEFAULT_LIMIT = 20
MAX_LIMIT = 50
