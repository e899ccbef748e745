"""Request admission guard."""

from berth.services.ratelimit.limiter import AdmissionGuard, RateLimiter, RateLimitRecord

__all__ = ["AdmissionGuard", "RateLimitRecord", "RateLimiter"]
