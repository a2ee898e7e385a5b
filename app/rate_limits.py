from slowapi import Limiter
from slowapi.util import get_remote_address

import app_config

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[app_config.GENERAL_RATE_LIMIT],
    enabled=app_config.RATE_LIMIT_ENABLED,
)
