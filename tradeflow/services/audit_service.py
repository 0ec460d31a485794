from tradeflow.extensions import db
from tradeflow.models import AuditLog
from tradeflow.config import Config
from flask import has_request_context, request
import enum
import logging
import json

logger = logging.getLogger(__name__)
major_logger = logging.getLogger('major_events')
if not major_logger.handlers:
    handler = logging.FileHandler(Config.MAJOR_EVENTS_LOG)
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)
    major_logger.addHandler(handler)
    major_logger.setLevel(logging.INFO)
    major_logger.propagate = False

MAJOR_ACTION_PREFIXES = (
    'ORDER_',
    'PAYMENT_',
    'INVOICE_',
    'DISPUTE_',
    'RETURN_',
    'PAYOUT_',
    'OUTBOX_DLQ_',
)


def _should_log_major(action: str) -> bool:
    if not action:
        return False
    return action.startswith(MAJOR_ACTION_PREFIXES)


def _status_value(status):
    if isinstance(status, enum.Enum):
        return status.value
    return status


def log_audit(
        actor_id=None,
        actor_role='SYSTEM',
        action='',
        target_type=None,
        target_id=None,
        from_status=None,
        to_status=None,
        payload=None,
        ip=None,
        user_agent=None,
        commit=False):
    """Record one audit entry.

    With commit=False (the default) the entry joins the caller's open
    transaction and is written together with the state change it
    describes. commit=True writes it on its own and never raises.
    """
    method = None
    path = None
    if has_request_context():
        ip = ip or request.remote_addr
        user_agent = user_agent or request.headers.get('User-Agent')
        method = request.method
        path = request.path

    audit = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type=target_type,
        target_id=target_id,
        from_status=_status_value(from_status),
        to_status=_status_value(to_status),
        payload=payload or {},
        ip=ip,
        user_agent=user_agent
    )

    if commit:
        try:
            db.session.add(audit)
            db.session.commit()
        except Exception as e:
            logger.error(f"Failed to log audit: {e}", exc_info=True)
            db.session.rollback()
            return None
    else:
        db.session.add(audit)

    payload_brief = None
    if payload is not None:
        payload_brief = json.dumps(
            payload, ensure_ascii=False, separators=(',', ':'), default=str)
        if len(payload_brief) > 600:
            payload_brief = payload_brief[:600] + '...'

    logger.info(
        "AUDIT action=%s actor_role=%s actor_id=%s target_type=%s "
        "target_id=%s from=%s to=%s method=%s path=%s payload=%s",
        action,
        actor_role,
        actor_id,
        target_type,
        target_id,
        audit.from_status,
        audit.to_status,
        method,
        path,
        payload_brief,
    )

    if _should_log_major(action):
        major_logger.info(
            "action=%s actor_role=%s actor_id=%s target_type=%s "
            "target_id=%s from=%s to=%s payload=%s",
            action,
            actor_role,
            actor_id,
            target_type,
            target_id,
            audit.from_status,
            audit.to_status,
            payload_brief,
        )

    return audit


def get_history(target_type, target_id):
    return AuditLog.query.filter_by(
        target_type=target_type,
        target_id=target_id
    ).order_by(AuditLog.created_at.asc(), AuditLog.id.asc()).all()
