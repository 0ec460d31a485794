from datetime import datetime, timezone
from functools import wraps
from flask import current_app, has_app_context
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from tradeflow.config import Config
from tradeflow.errors import ConcurrentModificationError, ServiceError
from tradeflow.extensions import db
import logging

logger = logging.getLogger(__name__)


def utcnow():
    # Naive UTC, matching how DateTime columns are stored.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def setting(name):
    if has_app_context() and name in current_app.config:
        return current_app.config[name]
    return getattr(Config, name)


def ok(data=None, code=None):
    result = {'success': True, 'data': data}
    if code:
        result['code'] = code
    return result


def fail(error, code):
    return {'success': False, 'error': error, 'code': code}


def as_id_set(ids):
    """Normalize a single identifier or an iterable of them to a set."""
    if ids is None:
        return set()
    if isinstance(ids, (str, int)):
        return {str(ids)}
    return {str(i) for i in ids if i is not None}


def to_amount(value) -> float:
    if value is None:
        return 0.0
    return round(float(value), 2)


def amount_tolerance(reference) -> float:
    base = setting('AMOUNT_TOLERANCE')
    return max(base, abs(float(reference or 0)) * 1e-9)


def amount_gte(left, right) -> bool:
    """left >= right within tolerance."""
    return float(left) >= float(right) - amount_tolerance(right)


def amount_exceeds(left, right) -> bool:
    """left > right by more than the tolerance."""
    return float(left) > float(right) + amount_tolerance(right)


def validate_snapshot(data, required_fields, label='snapshot'):
    """Check a JSON snapshot before it is stored.

    Returns an error message, or None when the snapshot is usable.
    """
    if not isinstance(data, dict):
        return f'{label} must be an object'
    for field in required_fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return f'{label}.{field} is required'
    return None


def validate_snapshot_list(items, required_fields, label='items'):
    if not isinstance(items, list) or not items:
        return f'{label} must be a non-empty list'
    for index, item in enumerate(items):
        error = validate_snapshot(item, required_fields,
                                  label=f'{label}[{index}]')
        if error:
            return error
    return None


def paginate_query(query, page=1, per_page=None):
    pagination = query.paginate(
        page=page,
        per_page=per_page or setting('ITEMS_PER_PAGE'),
        error_out=False
    )
    return {
        'items': pagination.items,
        'page': pagination.page,
        'pages': pagination.pages,
        'per_page': pagination.per_page,
        'total': pagination.total,
        'has_next': pagination.has_next,
        'has_prev': pagination.has_prev
    }


def lock_status(model, entity_id, expected):
    """Re-read ``model.status`` under a row lock and compare.

    Raises ConcurrentModificationError when another writer moved the row
    since the caller's pre-check.
    """
    current = db.session.execute(
        select(model.status)
        .where(model.id == entity_id)
        .with_for_update()
    ).scalar_one_or_none()
    if current != expected:
        raise ConcurrentModificationError(
            f'{model.__name__} {entity_id} was modified concurrently')
    return current


def service_operation(f):
    """Turn storage and concurrency failures into result dicts."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ConcurrentModificationError as e:
            db.session.rollback()
            logger.warning("%s lost a concurrent update: %s",
                           f.__name__, e.message)
            return fail(e.message, 'CONCURRENT_MODIFICATION')
        except ServiceError as e:
            db.session.rollback()
            return fail(e.message, e.code)
        except SQLAlchemyError as e:
            logger.error(f"{f.__name__} failed: {e}", exc_info=True)
            db.session.rollback()
            return fail('Internal error', 'INTERNAL_ERROR')
    return decorated_function
