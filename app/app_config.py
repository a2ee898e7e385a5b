"""
Environment configuration for the rental booking API.
Values are read once at import; a local .env file is honoured.
"""
import os
import re
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

# Persistence (hosted Postgres connection string)
DATABASE_URL = os.getenv('DATABASE_URL', '')

# Session tokens
JWT_SECRET = os.getenv('JWT_SECRET', '')
JWT_EXPIRES_IN = os.getenv('JWT_EXPIRES_IN', '7d')
JWT_ALGORITHM = 'HS256'

# Object storage
SUPABASE_URL = os.getenv('SUPABASE_URL', '')
SUPABASE_SERVICE_ROLE_KEY = os.getenv('SUPABASE_SERVICE_ROLE_KEY', '')
PROPERTY_IMAGES_BUCKET = os.getenv('PROPERTY_IMAGES_BUCKET', 'property-images')
MESSAGE_FILES_BUCKET = os.getenv('MESSAGE_FILES_BUCKET', 'message-files')

# Cache (empty disables caching)
REDIS_URL = os.getenv('REDIS_URL', '')

# CORS, comma separated. "*" allows any origin.
CORS_ORIGIN = os.getenv('CORS_ORIGIN', 'http://localhost:3000')
CORS_ORIGINS = [origin.strip() for origin in CORS_ORIGIN.split(',') if origin.strip()]

# Rate limits, in "<count> per <n> <unit>" notation
RATE_LIMIT_ENABLED = os.getenv('RATE_LIMIT_ENABLED', 'true').lower() in {'1', 'true', 'yes'}
AUTH_RATE_LIMIT = os.getenv('AUTH_RATE_LIMIT', '20 per 15 minutes')
SEARCH_RATE_LIMIT = os.getenv('SEARCH_RATE_LIMIT', '30 per minute')
IMAGE_UPLOAD_RATE_LIMIT = os.getenv('IMAGE_UPLOAD_RATE_LIMIT', '10 per hour')
GENERAL_RATE_LIMIT = os.getenv('GENERAL_RATE_LIMIT', '200 per 15 minutes')

# Upload limits
MAX_PROPERTY_IMAGES = 10
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_MESSAGE_FILE_BYTES = 20 * 1024 * 1024

# Cache lifetimes in seconds
PROPERTY_LIST_TTL = 300
PROPERTY_DETAIL_TTL = 600
PROPERTY_BOOKINGS_TTL = 60
CONVERSATIONS_TTL = 120

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Server
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '3000'))

REQUIRED_VARIABLES = (
    'DATABASE_URL',
    'JWT_SECRET',
    'SUPABASE_URL',
    'SUPABASE_SERVICE_ROLE_KEY',
)

_DURATION_UNITS = {'s': 'seconds', 'm': 'minutes', 'h': 'hours', 'd': 'days'}


class ConfigurationError(RuntimeError):
    pass


def validate_config() -> None:
    """Fail fast when a required variable is missing."""
    missing = [name for name in REQUIRED_VARIABLES if not globals()[name]]
    if missing:
        raise ConfigurationError(
            "Missing required environment variables: {}".format(", ".join(missing))
        )


def parse_duration(value: str) -> timedelta:
    """Parse "7d", "12h", "30m", "45s" or a bare number of seconds."""
    match = re.fullmatch(r"\s*(\d+)\s*([smhd]?)\s*", value or "")
    if not match:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS.get(unit or 's'): int(amount)})
