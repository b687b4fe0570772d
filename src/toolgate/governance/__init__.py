"""
Toolgate Governance Components

Pre-execution and execution-time controls applied to every tool call:

- ToolVersionResolver: pick a concrete, non-sunset schema version
- ToolDependencyValidator: enforce session/context/entity preconditions
- RateLimiter: fixed-window limits per (identifier, tool)
- CircuitBreaker: fail fast while a backing service is unhealthy
"""

from toolgate.governance.circuit_breaker import CircuitBreaker, is_recoverable_error
from toolgate.governance.dependencies import ToolDependencyValidator, default_dependencies
from toolgate.governance.rate_limiter import RateLimiter
from toolgate.governance.versions import ToolVersionResolver, compare_versions, is_valid_semver

__all__ = [
    "CircuitBreaker",
    "RateLimiter",
    "ToolDependencyValidator",
    "ToolVersionResolver",
    "compare_versions",
    "default_dependencies",
    "is_recoverable_error",
    "is_valid_semver",
]
