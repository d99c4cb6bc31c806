"""Platform-independent relay engine.

WHY: Retries, rate limiting, capability signing and the envelope types do
not depend on Slack. Keeping them apart lets the Slack layer and the HTTP
layer share one tested implementation.

HOW: retry (Backoff Executor), rate_limit (Token Bucket Limiter),
capability (signed single-use proxy URLs), envelope (RelayEnvelope and
RelayFile), errors (RelayError hierarchy).
"""

from slack_relay.core.errors import RelayError
from slack_relay.core.rate_limit import RateLimiterRegistry, TokenBucketConfig
from slack_relay.core.retry import RetryPolicy, retry_with_backoff

__all__ = [
    "RateLimiterRegistry",
    "RelayError",
    "RetryPolicy",
    "TokenBucketConfig",
    "retry_with_backoff",
]
