"""Transactional outbox.

Business operations write their side-effect intents here inside the same
transaction as the state change. Delivery belongs to an external
dispatcher; the dispatcher-facing helpers at the bottom of this module
(claim, delivered, failed) are the only code that moves an event past
``pending``.
"""
from tradeflow.extensions import db
from tradeflow.models import (
    OutboxEvent,
    OutboxStatus,
    OutboxDestination,
    OutboxDeadLetter,
    DeadLetterReason,
    DeadLetterStatus)
from tradeflow.services.audit_service import log_audit
from tradeflow.utils import ok, fail, setting, utcnow
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


def _build_event(
        event_type,
        aggregate_type,
        aggregate_id,
        payload,
        destination=OutboxDestination.NOTIFICATION,
        destination_url=None,
        delay_seconds=0,
        max_attempts=None,
        correlation_id=None,
        causation_id=None):
    if not event_type:
        raise ValueError('event_type is required')
    if not aggregate_type or not aggregate_id:
        raise ValueError('aggregate_type and aggregate_id are required')
    if not isinstance(payload, dict):
        raise ValueError('payload must be a JSON object')

    now = utcnow()
    return OutboxEvent(
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        payload=payload,
        destination=OutboxDestination(destination),
        destination_url=destination_url,
        partition_key=str(aggregate_id),
        status=OutboxStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or setting('OUTBOX_MAX_ATTEMPTS'),
        next_attempt_at=now + timedelta(seconds=delay_seconds or 0),
        correlation_id=correlation_id,
        causation_id=causation_id,
        created_at=now,
    )


def enqueue_in_transaction(event_type, aggregate_type, aggregate_id, payload,
                           **options):
    """Add an event to the caller's open transaction.

    Nothing is committed here; the event becomes durable exactly when the
    caller's business change does.
    """
    event = _build_event(event_type, aggregate_type, aggregate_id, payload,
                         **options)
    db.session.add(event)
    db.session.flush()
    return event


def enqueue(event_type, aggregate_type, aggregate_id, payload, **options):
    try:
        event = enqueue_in_transaction(
            event_type, aggregate_type, aggregate_id, payload, **options)
        db.session.commit()
    except ValueError as e:
        db.session.rollback()
        return fail(str(e), 'VALIDATION_ERROR')
    except SQLAlchemyError as e:
        logger.error(f"Failed to enqueue {event_type}: {e}", exc_info=True)
        db.session.rollback()
        return fail('Failed to enqueue event', 'INTERNAL_ERROR')
    return ok(event)


def enqueue_batch(events):
    """Insert several events atomically; all of them or none.

    Each entry is a dict with the keyword arguments of ``enqueue``.
    """
    if not events:
        return fail('No events to enqueue', 'VALIDATION_ERROR')

    try:
        created = []
        for entry in events:
            entry = dict(entry)
            created.append(_build_event(
                entry.pop('event_type', None),
                entry.pop('aggregate_type', None),
                entry.pop('aggregate_id', None),
                entry.pop('payload', None),
                **entry))
        db.session.add_all(created)
        db.session.commit()
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return fail(str(e), 'VALIDATION_ERROR')
    except SQLAlchemyError as e:
        logger.error(f"Failed to enqueue batch: {e}", exc_info=True)
        db.session.rollback()
        return fail('Failed to enqueue events', 'INTERNAL_ERROR')

    logger.info("Enqueued %d outbox events", len(created))
    return ok(created)


def publish_best_effort(event_type, aggregate_type, aggregate_id, payload,
                        **options):
    """Enqueue a non-critical event after the primary commit.

    Failures are logged and swallowed; the primary operation already
    succeeded and must stay that way.
    """
    try:
        result = enqueue(event_type, aggregate_type, aggregate_id, payload,
                         **options)
    except Exception as e:
        logger.error(
            f"Best-effort event {event_type} for {aggregate_type} "
            f"{aggregate_id} failed: {e}",
            exc_info=True)
        db.session.rollback()
        return None
    if not result['success']:
        logger.error(
            "Best-effort event %s for %s %s not recorded: %s",
            event_type, aggregate_type, aggregate_id, result['error'])
        return None
    return result['data']


def compute_backoff_seconds(attempts) -> int:
    base = setting('OUTBOX_BASE_BACKOFF_SECONDS')
    cap = setting('OUTBOX_MAX_BACKOFF_SECONDS')
    return min(base * (2 ** max(attempts - 1, 0)), cap)


# Dispatcher-facing helpers


def claim_due_events(limit=None):
    """Lock and return pending events that are due, oldest first."""
    now = utcnow()
    stmt = (
        select(OutboxEvent)
        .where(
            OutboxEvent.status == OutboxStatus.PENDING,
            OutboxEvent.next_attempt_at <= now)
        .order_by(OutboxEvent.created_at.asc())
        .limit(limit or setting('OUTBOX_BATCH_SIZE'))
        .with_for_update(skip_locked=True)
    )
    events = db.session.execute(stmt).scalars().all()
    for event in events:
        event.status = OutboxStatus.PROCESSING
        event.attempts += 1
        event.last_attempt_at = now
    db.session.commit()
    return events


def mark_delivered(event_id):
    event = db.session.get(OutboxEvent, event_id)
    if not event:
        return fail('Outbox event not found', 'EVENT_NOT_FOUND')
    event.status = OutboxStatus.DELIVERED
    event.processed_at = utcnow()
    event.last_error = None
    db.session.commit()
    return ok(event)


def mark_failed(event_id, error, permanent=False):
    """Schedule a retry with backoff, or dead-letter the event."""
    event = db.session.get(OutboxEvent, event_id)
    if not event:
        return fail('Outbox event not found', 'EVENT_NOT_FOUND')

    event.last_error = str(error)[:2000] if error else None

    if permanent or event.attempts >= event.max_attempts:
        reason = (
            DeadLetterReason.PERMANENT_FAILURE if permanent
            else DeadLetterReason.MAX_RETRIES_EXCEEDED
        )
        event.status = OutboxStatus.FAILED
        event.processed_at = utcnow()
        dead = OutboxDeadLetter(
            original_event_id=event.id,
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
            destination=event.destination,
            destination_url=event.destination_url,
            correlation_id=event.correlation_id,
            error=event.last_error,
            failure_reason=reason,
            attempts=event.attempts,
            status=DeadLetterStatus.UNRESOLVED,
        )
        db.session.add(dead)
        db.session.commit()
        logger.warning(
            "Outbox event %s (%s) moved to DLQ: %s",
            event.id, event.event_type, reason.value)
        return ok(dead, code='DEAD_LETTERED')

    delay = compute_backoff_seconds(event.attempts)
    event.status = OutboxStatus.PENDING
    event.next_attempt_at = utcnow() + timedelta(seconds=delay)
    db.session.commit()
    logger.info(
        "Outbox event %s retry %d/%d in %ss",
        event.id, event.attempts, event.max_attempts, delay)
    return ok(event, code='RETRY_SCHEDULED')


# Dead-letter queue


def list_dlq_items(status=DeadLetterStatus.UNRESOLVED, limit=100):
    query = OutboxDeadLetter.query
    if status is not None:
        query = query.filter_by(status=DeadLetterStatus(status))
    return query.order_by(OutboxDeadLetter.created_at.desc()).limit(
        limit).all()


def requeue_from_dlq(dlq_id, actor_id=None, actor_role='ADMIN'):
    dead = db.session.get(OutboxDeadLetter, dlq_id)
    if not dead:
        return fail('DLQ item not found', 'DLQ_ITEM_NOT_FOUND')
    if dead.status != DeadLetterStatus.UNRESOLVED:
        return fail('DLQ item is already resolved', 'INVALID_STATE')

    try:
        event = enqueue_in_transaction(
            dead.event_type,
            dead.aggregate_type,
            dead.aggregate_id,
            dead.payload,
            destination=dead.destination,
            destination_url=dead.destination_url,
            correlation_id=dead.correlation_id,
            causation_id=dead.original_event_id,
        )
        dead.status = DeadLetterStatus.REQUEUED
        dead.requeued_event_id = event.id
        dead.resolved_at = utcnow()
        dead.resolved_by = actor_id

        log_audit(
            actor_id=actor_id,
            actor_role=actor_role,
            action='OUTBOX_DLQ_REQUEUE',
            target_type='OUTBOX_DLQ',
            target_id=dead.id,
            from_status=DeadLetterStatus.UNRESOLVED,
            to_status=DeadLetterStatus.REQUEUED,
            payload={'new_event_id': event.id,
                     'event_type': dead.event_type})
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to requeue DLQ item {dlq_id}: {e}",
                     exc_info=True)
        db.session.rollback()
        return fail('Failed to requeue event', 'INTERNAL_ERROR')

    return ok(event)


def resolve_dlq_item(dlq_id, actor_id=None, note=None, actor_role='ADMIN'):
    dead = db.session.get(OutboxDeadLetter, dlq_id)
    if not dead:
        return fail('DLQ item not found', 'DLQ_ITEM_NOT_FOUND')
    if dead.status != DeadLetterStatus.UNRESOLVED:
        return fail('DLQ item is already resolved', 'INVALID_STATE')

    dead.status = DeadLetterStatus.SKIPPED
    dead.resolved_at = utcnow()
    dead.resolved_by = actor_id
    dead.resolution_note = note

    log_audit(
        actor_id=actor_id,
        actor_role=actor_role,
        action='OUTBOX_DLQ_SKIP',
        target_type='OUTBOX_DLQ',
        target_id=dead.id,
        from_status=DeadLetterStatus.UNRESOLVED,
        to_status=DeadLetterStatus.SKIPPED,
        payload={'note': note})
    db.session.commit()
    return ok(dead)
