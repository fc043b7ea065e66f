"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply the per-IP login limit with @limiter.limit()).

This is the coarse per-IP throttle. The per-username escalating lockout lives
in auth/attempts.py; the two are independent and both apply to login.

A single shared instance keeps one in-memory counter store for every route.
Per-module instances would each count separately and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
