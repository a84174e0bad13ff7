# /flowbot/utils/rate_limiter.py

from slowapi import Limiter
from flowbot.utils.request_utils import get_remote_address
from flowbot.config.settings import settings

# Shared limiter instance, imported by both the app factory and the routes.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"]
)
