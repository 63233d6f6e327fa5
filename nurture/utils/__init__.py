from .clock import ensure_utc, utc_now
from .retry import compute_backoff, next_attempt_at

__all__ = ["compute_backoff", "ensure_utc", "next_attempt_at", "utc_now"]
