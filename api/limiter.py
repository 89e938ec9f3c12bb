"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are keyed by client address and are independent of the per-account
lockout counter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# register, login, resend-verification
AUTH_RATE_LIMIT = "5/15 minutes"
# request-password-reset, reset-password-otp
PASSWORD_RESET_RATE_LIMIT = "3/hour"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
