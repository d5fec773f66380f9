"""
Optimistic-concurrency read/update primitive over a single entity table.

The store never holds locks. An update is a compare-and-swap executed as a
single conditional UPDATE statement:

    UPDATE invoices SET ..., version = version + 1
    WHERE id = :id AND version = :expected_version

so two writers racing on the same version cannot both succeed, no matter how
their reads interleave. Each successful write commits on its own; the store
does not participate in cross-table transactions.
"""

import logging
from typing import Any, Dict, Generic, Optional, Tuple, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from services.billing_errors import RecordNotFoundError, VersionConflictError
from utils.datetime_utils import clinic_now
from utils.retry import retry_on_transient_failure

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

_PROTECTED_FIELDS = frozenset({"id", "version"})


class VersionedRecordStore(Generic[ModelT]):
    """
    Versioned access to one table whose model has integer `id` and `version` columns.

    Args:
        db: Database session used for reads and writes
        model: SQLAlchemy model class
        not_found_error: Error class raised when a record does not exist
        entity_name: Name used in error messages (defaults to the model name)
    """

    def __init__(
        self,
        db: Session,
        model: Type[ModelT],
        not_found_error: Type[RecordNotFoundError] = RecordNotFoundError,
        entity_name: Optional[str] = None,
    ):
        self.db = db
        self.model = model
        self.not_found_error = not_found_error
        self.entity_name = entity_name or model.__name__

    def _load(self, record_id: int) -> Optional[ModelT]:
        # populate_existing so a record already in the identity map reflects
        # writes made by other sessions
        stmt = (
            select(self.model)
            .where(self.model.id == record_id)  # type: ignore[attr-defined]
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    @retry_on_transient_failure()
    def find(self, record_id: int) -> Optional[ModelT]:
        """Return the record or None."""
        try:
            return self._load(record_id)
        except DBAPIError:
            self.db.rollback()
            raise

    @retry_on_transient_failure()
    def get(self, record_id: int) -> Tuple[ModelT, int]:
        """
        Read a record together with its current version.

        Raises:
            RecordNotFoundError (or the configured subclass) if missing
        """
        try:
            record = self._load(record_id)
        except DBAPIError:
            self.db.rollback()
            raise
        if record is None:
            raise self.not_found_error(self.entity_name, record_id)
        return record, record.version  # type: ignore[attr-defined]

    @retry_on_transient_failure()
    def update(
        self,
        record_id: int,
        expected_version: Optional[int],
        patch: Dict[str, Any],
    ) -> ModelT:
        """
        Apply `patch` if the stored version still equals `expected_version`.

        A successful update increments the version by exactly one and commits.
        Passing expected_version=None skips the check; reserve it for internal
        bookkeeping that cannot conflict with another actor's intent.

        Raises:
            VersionConflictError: stored version differs from expected_version
            RecordNotFoundError: record does not exist
        """
        protected = _PROTECTED_FIELDS.intersection(patch)
        if protected:
            raise ValueError(f"Cannot patch protected fields: {sorted(protected)}")

        values: Dict[str, Any] = dict(patch)
        values["version"] = self.model.version + 1  # type: ignore[attr-defined]
        if "updated_at" in self.model.__table__.columns and "updated_at" not in values:  # type: ignore[attr-defined]
            values["updated_at"] = clinic_now()

        stmt = update(self.model).where(self.model.id == record_id)  # type: ignore[attr-defined]
        if expected_version is not None:
            stmt = stmt.where(self.model.version == expected_version)  # type: ignore[attr-defined]
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            result = self.db.execute(stmt)
            if result.rowcount == 0:
                self.db.rollback()
                current = self._load(record_id)
                if current is None:
                    raise self.not_found_error(self.entity_name, record_id)
                current_version = current.version  # type: ignore[attr-defined]
                logger.info(
                    f"Version conflict on {self.entity_name} {record_id}: "
                    f"expected {expected_version}, found {current_version}"
                )
                raise VersionConflictError(
                    self.entity_name, record_id, current_version, expected_version  # type: ignore[arg-type]
                )
            self.db.commit()
            record = self._load(record_id)
        except DBAPIError:
            self.db.rollback()
            raise

        if record is None:
            raise self.not_found_error(self.entity_name, record_id)
        return record

    @retry_on_transient_failure()
    def insert(self, record: ModelT) -> ModelT:
        """Persist a new record (version starts at 1) and commit."""
        try:
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except DBAPIError:
            self.db.rollback()
            raise
        return record
