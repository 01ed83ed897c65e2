"""Extract package — safe ConnectorX reads and database error classification.

The classifier is shared by bulk reads (retry here, fail the run on permanent
errors) and by the derived-dataset writer (split gap failures into transient
and terminal).
"""

from __future__ import annotations

import logging
import time

import connectorx as cx
import polars as pl

logger = logging.getLogger(__name__)

_CX_MAX_RETRIES = 3
_CX_RETRY_BASE_DELAY = 2.0  # seconds, doubles each retry


def cx_read_sql_safe(
    *,
    conn: str,
    query: str,
    context: str = "",
    max_retries: int = _CX_MAX_RETRIES,
) -> pl.DataFrame:
    """Run cx.read_sql into a polars DataFrame, retrying transient failures.

    ConnectorX surfaces driver failures as Rust panics, which may derive from
    BaseException rather than Exception, so both are caught here. Permanent
    failures (syntax, permissions, missing objects) are raised immediately.

    Args:
        conn: ConnectorX connection URI.
        query: SQL query to execute.
        context: Description for log messages (e.g. "curtailment 2024-06-01").
        max_retries: Maximum attempts (default 3).

    Raises:
        BaseException: The last error once retries are exhausted.
    """
    last_error: BaseException | None = None

    for attempt in range(1, max_retries + 1):
        try:
            return cx.read_sql(conn, query, return_type="polars")
        except BaseException as e:
            last_error = e
            error_type = type(e).__name__
            non_retryable = is_non_retryable_error(str(e).lower(), error_type)

            if non_retryable or attempt == max_retries:
                logger.error(
                    "ConnectorX %s failed after %d attempt(s) (%s: %s)%s",
                    context, attempt, error_type, e,
                    " [non-retryable]" if non_retryable else "",
                )
                raise

            delay = _CX_RETRY_BASE_DELAY * (2 ** (attempt - 1))
            logger.warning(
                "ConnectorX %s attempt %d/%d failed (%s: %s). Retrying in %.1fs...",
                context, attempt, max_retries, error_type, e, delay,
            )
            time.sleep(delay)

    raise last_error  # type: ignore[misc]


# Permanent SQL Server failures. Retrying cannot change the outcome.
_NON_RETRYABLE_PATTERNS = (
    "syntax",
    "permission",
    "does not exist",
    "invalid column",
    "invalid object",
    "login failed",
    "access denied",
    "conversion failed",
    "arithmetic overflow",
    "string or binary data would be truncated",
    "cannot insert the value null",
)

# Transient failures win over permanent patterns when both match.
_TRANSIENT_PATTERNS = (
    "deadlock",
    "connection reset",
    "connection refused",
    "communication link failure",
    "timeout",
    "timed out",
    "broken pipe",
    "network",
    "server is not available",
    "lock request time out",
)


def is_non_retryable_error(error_str: str, error_type: str) -> bool:
    """Return True if a database error should NOT be retried.

    Args:
        error_str: Lower-cased error message.
        error_type: Exception class name.
    """
    for pattern in _TRANSIENT_PATTERNS:
        if pattern in error_str:
            return False

    for pattern in _NON_RETRYABLE_PATTERNS:
        if pattern in error_str:
            return True

    if error_type in ("KeyboardInterrupt", "SystemExit"):
        return True

    # Unknown errors are assumed transient; the per-gap retry budget bounds the cost.
    return False
