"""
api/limiter.py -- The process-wide slowapi limiter and the StaffGate limits.

api/main.py mounts it (SlowAPIMiddleware reads app.state.limiter) and the
route modules decorate handlers with @limiter.limit(...), placed below the
@router decorator. The router then registers the wrapper itself, which
enforces the limit even where the middleware cannot match the route. The
middleware marks requests it already counted, so nothing is counted twice.
Counters live in the limiter's own memory storage, so every app built in
the same process shares them; tests call limiter.reset() between cases.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# [H2] brute-force mitigation on password login
LOGIN_LIMIT = "10/minute"
# Endpoints that send email: bound the mail volume one client can trigger
EMAIL_LIMIT = "5/minute"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
