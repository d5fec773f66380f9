"""
Idempotency guard shared by the billing workflows.

Ordering rule: before a version mismatch is treated as a conflict, check
whether the target is already in its terminal success state. A client whose
first request succeeded but never saw the response retries with the version
it read before that success; that retry must return the current state, not a
conflict, and must never apply the effect a second time.
"""

import logging
from typing import Any, Collection, Optional

from services.billing_errors import VersionConflictError

logger = logging.getLogger(__name__)


def is_terminal(status: str, terminal_statuses: Collection[str]) -> bool:
    return status in terminal_statuses


def guard_stale_version(
    *,
    entity: str,
    record_id: Any,
    status: str,
    current_version: int,
    expected_version: Optional[int],
    terminal_statuses: Collection[str],
) -> bool:
    """
    Decide what a version check means for this call.

    Returns:
        False if no version was supplied or it matches (proceed normally);
        True if it mismatches but the record is already terminal (idempotent retry)

    Raises:
        VersionConflictError: mismatch on a record that is not yet terminal
    """
    if expected_version is None or expected_version == current_version:
        return False

    if is_terminal(status, terminal_statuses):
        logger.info(
            f"{entity} {record_id} already '{status}' (version {current_version}); "
            f"treating stale request (expected version {expected_version}) as an idempotent retry"
        )
        return True

    raise VersionConflictError(entity, record_id, current_version, expected_version)


def check_idempotent_retry(
    record: Any,
    expected_version: Optional[int],
    terminal_statuses: Collection[str],
    entity: Optional[str] = None,
) -> bool:
    """guard_stale_version() for a loaded record with `id`, `status` and `version`."""
    return guard_stale_version(
        entity=entity or type(record).__name__,
        record_id=record.id,
        status=record.status,
        current_version=record.version,
        expected_version=expected_version,
        terminal_statuses=terminal_statuses,
    )
