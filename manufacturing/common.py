# manufacturing/common.py - Common utility functions
import pandas as pd
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union
from sqlalchemy import Integer, cast, func, select, update
from sqlalchemy.exc import SQLAlchemyError
import logging

from utils.config import config
from .errors import ConcurrentModification, EngineError, StorageError

logger = logging.getLogger(__name__)

QTY_PLACES = 6


def round_qty(value: Union[int, float, None]) -> float:
    """Round a quantity to ledger precision"""
    if value is None:
        return 0.0
    return round(float(value), QTY_PLACES)


def now() -> datetime:
    return datetime.now()


def row_to_dict(row) -> Optional[Dict[str, Any]]:
    """Convert a result row to a plain dict"""
    return dict(row._mapping) if row is not None else None


def next_reference(conn, table, prefix: str, width: int = 4, column=None) -> str:
    """Generate the next yearly reference, e.g. MO-2026-0001"""
    column = column if column is not None else table.c.reference
    stem = f"{prefix}-{now().year}-"

    # Latest number, not row count: deleted rows leave gaps
    max_num = conn.execute(
        select(func.max(cast(func.substr(column, len(stem) + 1), Integer)))
        .where(column.like(f"{stem}%"))
    ).scalar()
    return f"{stem}{(max_num or 0) + 1:0{width}d}"


def validate_quantity(value: Any, min_value: float = 0, max_value: Optional[float] = None,
                      allow_equal_min: bool = True) -> Tuple[bool, Union[float, str]]:
    """Validate quantity input"""
    try:
        qty = float(value)
        if qty < min_value or (qty == min_value and not allow_equal_min):
            bound = "at least" if allow_equal_min else "greater than"
            return False, f"Quantity must be {bound} {min_value}"
        if max_value is not None and qty > max_value:
            return False, f"Quantity cannot exceed {max_value}"
        return True, qty
    except (ValueError, TypeError):
        return False, "Invalid quantity format"


def calculate_percentage(numerator: Union[int, float], denominator: Union[int, float],
                         decimal_places: int = 1) -> float:
    """Calculate percentage safely"""
    if denominator == 0 or pd.isna(denominator) or pd.isna(numerator):
        return 0.0

    percentage = (numerator / denominator) * 100
    return round(percentage, decimal_places)


def to_datetime(value: Union[datetime, str, None]) -> Optional[datetime]:
    """Coerce a stored timestamp to datetime"""
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value
    return pd.to_datetime(value).to_pydatetime()


def elapsed_minutes(start: Union[datetime, str, None], end: Union[datetime, str, None]) -> float:
    """Minutes between two timestamps, zero if either is missing"""
    start_dt, end_dt = to_datetime(start), to_datetime(end)
    if start_dt is None or end_dt is None:
        return 0.0
    return max(0.0, round((end_dt - start_dt).total_seconds() / 60, 2))


def retry_on_conflict(operation: Callable, *args, attempts: Optional[int] = None, **kwargs):
    """Run an operation, retrying when an optimistic lock conflict occurs"""
    attempts = max(1, attempts if attempts is not None else config.max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return operation(*args, **kwargs)
        except ConcurrentModification as e:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} attempts: {e.message}")
                raise
            logger.warning(f"Conflict on attempt {attempt}/{attempts}, retrying: {e.message}")


def versioned_update(conn, table, record: Dict[str, Any], **values) -> int:
    """Update a versioned row only if nobody changed it since it was read"""
    result = conn.execute(
        update(table)
        .where(table.c.id == record['id'], table.c.version == record['version'])
        .values(version=record['version'] + 1, **values)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(
            f"{table.name} record {record.get('reference', record['id'])} was modified concurrently",
            table=table.name, record_id=record['id']
        )
    return record['version'] + 1


@contextmanager
def unit_of_work(engine, conn=None):
    """Yield a connection inside a transaction.

    Joins the caller's transaction when ``conn`` is given, otherwise opens one
    and commits on success. Persistence errors are re-raised as StorageError.
    """
    if conn is not None:
        yield conn
        return

    connection = engine.connect()
    trans = connection.begin()

    try:
        yield connection
        trans.commit()
    except EngineError:
        trans.rollback()
        raise
    except SQLAlchemyError as e:
        trans.rollback()
        logger.error(f"Database error, transaction rolled back: {e}")
        raise StorageError(f"Database error: {e.__class__.__name__}") from e
    except Exception:
        trans.rollback()
        raise
    finally:
        connection.close()


def log_activity(activity_type: str, reference: str, user_id: Any, details: Optional[Dict] = None) -> None:
    """Log user activity"""
    logger.info(f"Activity: {activity_type} - {reference} by user {user_id}")
    if details:
        logger.debug(f"Details: {details}")
