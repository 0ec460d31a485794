"""Human-readable document numbers such as ``PAY-OUT-2026-0001``.

Numbers come from a per-prefix, per-year row in ``sequence_counters``. The
row is created with an insert that ignores conflicts and then bumped with a
single ``UPDATE ... SET value = value + 1``, so two writers never read the
same value: the update holds the row lock until the surrounding
transaction ends. Number columns are also unique, which is the backstop if
rows are ever written around this service.
"""
from tradeflow.extensions import db
from tradeflow.models import SequenceCounter
from tradeflow.utils import utcnow
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
import logging

logger = logging.getLogger(__name__)

ORDER_PREFIX = 'ORD'
PAYMENT_PREFIX = 'PAY'
INVOICE_PREFIX = 'INV'
DISPUTE_PREFIX = 'DSP'
RETURN_PREFIX = 'RET'
PAYOUT_PREFIX = 'PAY-OUT'

NUMBER_WIDTH = 4


def _ensure_counter(name):
    dialect = db.session.get_bind().dialect.name
    if dialect == 'postgresql':
        stmt = postgresql.insert(SequenceCounter).values(name=name, value=0)
    elif dialect == 'sqlite':
        stmt = sqlite.insert(SequenceCounter).values(name=name, value=0)
    else:
        if db.session.get(SequenceCounter, name) is None:
            with db.session.begin_nested():
                db.session.add(SequenceCounter(name=name, value=0))
        return
    db.session.execute(stmt.on_conflict_do_nothing(index_elements=['name']))


def next_value(name) -> int:
    _ensure_counter(name)
    db.session.execute(
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(value=SequenceCounter.value + 1)
    )
    return db.session.execute(
        select(SequenceCounter.value).where(SequenceCounter.name == name)
    ).scalar_one()


def next_number(prefix, year=None) -> str:
    """Reserve the next number for ``prefix`` in the current transaction."""
    year = year or utcnow().year
    value = next_value(f'{prefix}-{year}')
    number = f'{prefix}-{year}-{value:0{NUMBER_WIDTH}d}'
    logger.debug("Allocated number %s", number)
    return number


def parse_sequence(number):
    """Return (prefix, year, sequence) for a generated number."""
    prefix, year, sequence = number.rsplit('-', 2)
    return prefix, int(year), int(sequence)
