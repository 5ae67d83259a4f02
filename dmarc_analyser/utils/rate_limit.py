"""
Simple in-memory rate limiter.

Counts requests per ``(scope, key)`` inside a fixed window using a plain
dict.  Used for login/registration attempts and the public DNS tools.

Thread safety note:
  The store is per process.  With several WSGI workers each worker keeps
  its own counters, so the effective limit is multiplied by the worker
  count.  The public interface would stay the same if the store moved to a
  shared cache.

Usage:
    from dmarc_analyser.utils.rate_limit import is_rate_limited, request_ip

    if is_rate_limited("login", request_ip(), limit=10, window=300):
        return jsonify({"error": "Too many attempts"}), 429
"""

from __future__ import annotations

import logging
import time
from typing import Final

from flask import request

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_LIMIT: Final[int] = 30
_DEFAULT_WINDOW_SECONDS: Final[int] = 60
_PRUNE_INTERVAL_SECONDS: Final[int] = 60

# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

# Keys are (scope, key) tuples; values are [window_start, count, window].
#
# Example entries:
#   ("login", "203.0.113.9") -> [1_700_000_000.0, 3, 300]
#   ("dns_lookup", "198.51.100.2") -> [1_700_000_100.0, 12, 60]
_windows: dict[tuple[str, str], list[float]] = {}
_last_prune: float = 0.0


def _prune(now: float) -> None:
    """Drop every window that has already expired."""
    global _last_prune
    if now - _last_prune < _PRUNE_INTERVAL_SECONDS:
        return
    _last_prune = now
    expired = [k for k, (start, _count, window) in _windows.items() if now - start >= window]
    for k in expired:
        del _windows[k]
    if expired:
        logger.debug("Pruned %d expired rate-limit windows", len(expired))


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------


def request_ip() -> str:
    """Return the rate-limit key for the current request.

    This is the socket peer address.  Behind a reverse proxy, set
    ``PROXY_FIX_HOPS`` so ProxyFix rewrites it from trusted headers;
    client-supplied forwarding headers are never read here.
    """
    return request.remote_addr or "unknown"


def is_rate_limited(
    scope: str,
    key: str | int,
    *,
    limit: int = _DEFAULT_LIMIT,
    window: int = _DEFAULT_WINDOW_SECONDS,
) -> bool:
    """Return True if the caller should be rate-limited (i.e. too many hits).

    When the caller is *not* rate-limited the hit is counted.  Expired
    windows of other callers are dropped along the way.

    Args:
        scope:  Logical grouping key (e.g. "login" or "dns_lookup").
        key:    Caller identity inside the scope (client IP, user id).
        limit:  Maximum hits allowed per window.
        window: Window length in seconds.

    Returns:
        True  - the limit for the current window is exhausted; block it.
        False - the request is allowed and has been counted.
    """
    store_key = (scope, str(key))
    now = time.monotonic()
    _prune(now)

    entry = _windows.get(store_key)
    if entry is None or now - entry[0] >= window:
        _windows[store_key] = [now, 1, window]
        return False

    if entry[1] >= limit:
        logger.warning(
            "Rate limit active: scope=%r key=%r hits=%d window=%ds remaining=%ds",
            scope,
            str(key),
            int(entry[1]),
            window,
            int(window - (now - entry[0])),
        )
        return True

    entry[1] += 1
    return False


def reset_rate_limit(scope: str, key: str | int) -> None:
    """Clear the rate-limit record for a specific caller.

    Args:
        scope: Same scope string used in is_rate_limited().
        key:   Same key used in is_rate_limited().
    """
    _windows.pop((scope, str(key)), None)


def clear_all_rate_limits() -> None:
    """Remove all rate-limit records (test isolation)."""
    global _last_prune
    _windows.clear()
    _last_prune = 0.0
