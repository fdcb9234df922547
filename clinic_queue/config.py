"""
Queue Engine Configuration
Centralized configuration for Redis, estimation defaults and queue rules
"""
import logging
import os

from redis import Redis

# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
QUEUE_EVENTS_CHANNEL = os.getenv("QUEUE_EVENTS_CHANNEL", "queue:events")

# Estimation defaults (used when a clinic has no estimation config row)
DEFAULT_APPOINTMENT_DURATION = int(os.getenv("QUEUE_DEFAULT_APPOINTMENT_DURATION", "15"))
DEFAULT_ETA_BUFFER_MINUTES = int(os.getenv("QUEUE_DEFAULT_ETA_BUFFER", "10"))
SNAPSHOT_SAMPLE_SIZE = int(os.getenv("QUEUE_SNAPSHOT_SAMPLE_SIZE", "200"))

# Event bus history (debugging/testing only)
EVENT_HISTORY_SIZE = int(os.getenv("QUEUE_EVENT_HISTORY_SIZE", "100"))

# Absence grace period before a no-show can be declared
ABSENT_GRACE_MINUTES = int(os.getenv("QUEUE_ABSENT_GRACE_MINUTES", "15"))

# External ML inference service (unset = simulated estimator only)
ML_SERVICE_URL = os.getenv("ML_SERVICE_URL")
ML_SERVICE_TIMEOUT = float(os.getenv("ML_SERVICE_TIMEOUT", "10.0"))
ML_MODEL_VERSION = os.getenv("ML_MODEL_VERSION", "sim-v1")

# Per clinic-date lock TTL; must outlast a commit that waits on the ML service
LOCK_TTL_MS = max(
    int(os.getenv("QUEUE_LOCK_TTL_MS", "5000")),
    int((ML_SERVICE_TIMEOUT * 2 + 5) * 1000),
)

# Queue rules
DEFAULT_PRIORITY_SCORE = 100
PRIORITY_BOOST_DELTA = 50
GAP_FILLER_BONUS = 20
PRIORITY_RESPACE_STEP = 10

# Minimum confidence per strategy; below it the caller falls back
MIN_CONFIDENCE = {
    "ml": 0.7,
    "rule_based": 0.6,
    "historical_average": 0.5,
    "basic": 0.5,
}


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Attach a stream handler to the package logger if none is configured.

    Returns:
        logging.Logger: The ``clinic_queue`` logger
    """
    logger = logging.getLogger("clinic_queue")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_redis_client() -> Redis:
    """
    Get configured Redis client with optimized settings

    Returns:
        Redis: Configured Redis client instance
    """
    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
