"""Bounded retry-until polling and per-operation retry policies."""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, fields

from vmshepherd.errors import (
    ConfigurationError,
    RetryLimitExceeded,
    TransientProviderError,
    UnexpectedStateError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to poll and how long to sleep between polls."""

    limit: int = 60
    interval: float = 10

    @classmethod
    def from_dict(cls, data: dict, default: "RetryPolicy") -> "RetryPolicy":
        return cls(
            limit=int(data.get("limit", default.limit)),
            interval=float(data.get("interval", default.interval)),
        )


@dataclass(frozen=True)
class RetryPolicies:
    """Retry policy per polled operation.

    Defaults carry the budgets each provider call site was tuned with;
    settings can override any of them by name.
    """

    stack_create: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 30))
    stack_delete: RetryPolicy = field(default_factory=lambda: RetryPolicy(90, 30))
    instance_create: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 10))
    instance_running: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 10))
    address_visible: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 10))
    instance_terminated: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 10))
    volume_delete: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 5))
    edge_teardown: RetryPolicy = field(default_factory=lambda: RetryPolicy(30, 30))
    server_active: RetryPolicy = field(default_factory=lambda: RetryPolicy(60, 10))
    template_ready: RetryPolicy = field(default_factory=lambda: RetryPolicy(360, 5))
    guest_ip: RetryPolicy = field(default_factory=lambda: RetryPolicy(40, 30))
    folder_delete: RetryPolicy = field(default_factory=lambda: RetryPolicy(3, 10))
    vsphere_task: RetryPolicy = field(default_factory=lambda: RetryPolicy(720, 5))
    vcloud_task: RetryPolicy = field(default_factory=lambda: RetryPolicy(360, 5))

    @classmethod
    def from_dict(cls, data: dict | None) -> "RetryPolicies":
        """Build policies from a ``{operation: {limit, interval}}`` mapping."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError("'retry_policies' must be a mapping of operation name to {limit, interval}")
        defaults = cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown retry policy operation(s): {', '.join(unknown)}")
        overrides = {}
        for name, value in data.items():
            if value is not None and not isinstance(value, dict):
                raise ConfigurationError(f"Retry policy '{name}' must be a mapping with 'limit' and/or 'interval'")
            try:
                overrides[name] = RetryPolicy.from_dict(value or {}, getattr(defaults, name))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid retry policy '{name}': {e}") from e
        return cls(**overrides)


# ── Poll results ──────────────────────────────────────────────────


@dataclass(frozen=True)
class PollResult:
    """Outcome of one status check: done, pending, or failed."""

    state: str
    value: object = None
    reason: str = ""

    @classmethod
    def done(cls, value=True):
        return cls("done", value=value)

    @classmethod
    def pending(cls, reason=""):
        return cls("pending", reason=reason)

    @classmethod
    def failed(cls, reason):
        return cls("failed", reason=reason)


# ── Core logic ─────────────────────────────────────────────────────


def retry_until(limit, interval, predicate, description="condition"):
    """Call *predicate* until it returns a truthy value.

    Args:
        limit: maximum number of calls to *predicate*.
        interval: seconds to sleep between calls (never after the last one).
        predicate: zero-argument callable. Raising TransientProviderError
            counts as a falsy attempt; any other exception propagates.
        description: what is being waited for, used in log and error messages.

    Returns:
        The first truthy value returned by *predicate*.

    Raises:
        RetryLimitExceeded: after *limit* attempts without a truthy value.
    """
    last_error = None
    for attempt in range(1, limit + 1):
        try:
            value = predicate()
        except TransientProviderError as e:
            logger.debug(f"Transient error waiting for {description} (attempt {attempt}/{limit}): {e}")
            last_error = e
            value = None
        if value:
            return value
        if attempt < limit:
            time.sleep(interval)
    raise RetryLimitExceeded(description, limit, interval, last_error)


def poll(policy: RetryPolicy, check, description="condition"):
    """Run *check* under *policy* until it reports done.

    *check* returns a PollResult. ``failed`` aborts immediately with
    UnexpectedStateError; ``pending`` sleeps and tries again.
    """

    def _attempt():
        result = check()
        if result.state == "failed":
            raise UnexpectedStateError(description, result.reason, result.reason)
        if result.state == "done":
            return (result.value,)
        if result.reason:
            logger.debug(f"Waiting for {description}: {result.reason}")
        return None

    return retry_until(policy.limit, policy.interval, _attempt, description)[0]


@contextmanager
def transient_errors(is_transient):
    """Re-raise exceptions matching *is_transient* as TransientProviderError.

    Args:
        is_transient: callable taking the exception and returning the
            provider error code when it is expected here, or a falsy value.
    """
    try:
        yield
    except TransientProviderError:
        raise
    except Exception as e:
        code = is_transient(e)
        if not code:
            raise
        raise TransientProviderError(str(code), str(e)) from e
