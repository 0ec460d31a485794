import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or (
        'dev-secret-key-change-in-production'
    )
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or (
        'sqlite:///tradeflow.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_FILE = os.environ.get('LOG_FILE', 'app.log')
    MAJOR_EVENTS_LOG = os.environ.get('MAJOR_EVENTS_LOG', 'major_events.log')

    # Pagination configuration
    ITEMS_PER_PAGE = 20

    # Amount comparisons (absolute floor, relative part scales with total)
    AMOUNT_TOLERANCE = float(os.environ.get('AMOUNT_TOLERANCE', '0.005'))

    # Disputes
    DISPUTE_WINDOW_DAYS = int(os.environ.get('DISPUTE_WINDOW_DAYS', '14'))
    DISPUTE_RESPONSE_HOURS = 48
    DISPUTE_RESOLUTION_DAYS = 7

    # Invoices and payouts
    INVOICE_DUE_DAYS = 30
    PLATFORM_FEE_RATE = float(os.environ.get('PLATFORM_FEE_RATE', '0.025'))
    PAYOUT_HOLD_PERIOD_DAYS = int(
        os.environ.get('PAYOUT_HOLD_PERIOD_DAYS', '7')
    )
    PAYOUT_MIN_AMOUNT = float(os.environ.get('PAYOUT_MIN_AMOUNT', '100'))

    # Outbox retry budget
    OUTBOX_MAX_ATTEMPTS = 5
    OUTBOX_BASE_BACKOFF_SECONDS = 1
    OUTBOX_MAX_BACKOFF_SECONDS = 300
    OUTBOX_BATCH_SIZE = 50
