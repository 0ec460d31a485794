"""
Pytest configuration and fixtures.
"""
import pytest

from tradeflow import create_app
from tradeflow.config import Config
from tradeflow.extensions import db
from tradeflow.models import (
    User,
    UserRole,
    SellerProfile,
    SellerBank,
    BankVerificationStatus,
    Item,
)
from tradeflow.services import order_service


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'


@pytest.fixture
def app():
    """Application with a fresh in-memory schema per test."""
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def buyer(app):
    user = User(email='buyer@example.com', role=UserRole.BUYER,
                display_name='Buyer One')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def other_buyer(app):
    user = User(email='buyer2@example.com', role=UserRole.BUYER)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    user = User(email='ops@example.com', role=UserRole.ADMIN)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def seller(app):
    """Seller account; its profile id is a second valid seller id."""
    user = User(email='seller@example.com', role=UserRole.SELLER)
    db.session.add(user)
    db.session.flush()
    db.session.add(SellerProfile(user_id=user.id,
                                 company_name='Gulf Supply LLC'))
    db.session.commit()
    return user


@pytest.fixture
def seller_profile(seller):
    return seller.seller_profile


@pytest.fixture
def other_seller(app):
    user = User(email='seller2@example.com', role=UserRole.SELLER)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def seller_bank(seller):
    bank = SellerBank(
        seller_id=seller.id,
        bank_name='Emirates NBD',
        account_holder_name='Gulf Supply LLC',
        iban='AE070331234567890123456',
        verification_status=BankVerificationStatus.APPROVED,
    )
    db.session.add(bank)
    db.session.commit()
    return bank


@pytest.fixture
def item(seller):
    item = Item(seller_id=seller.id, name='Steel Pipe', sku='PIPE-2IN',
                description='Galvanized, 6m', price=250.00)
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture
def make_order(buyer, item):
    """Factory placing an order for the default item."""
    def _make(quantity=1, payment_method='bank_transfer', buyer_id=None):
        result = order_service.create_order(
            buyer_id or buyer.id,
            item.id,
            quantity=quantity,
            payment_method=payment_method,
            shipping_address={
                'recipient_name': 'Buyer One',
                'address_line1': 'Warehouse 4, Al Quoz',
                'city': 'Dubai',
                'country': 'AE',
            })
        assert result['success'], result
        return result['data']
    return _make


@pytest.fixture
def order(make_order):
    return make_order()


@pytest.fixture
def deliver(seller):
    """Drive an order through confirm, ship and delivery."""
    def _deliver(order, cash_collected=False):
        assert order_service.confirm_order(order.id, seller.id)['success']
        assert order_service.ship_order(
            order.id, seller.id, 'Aramex', tracking_number='AWB123'
        )['success']
        result = order_service.mark_delivered(
            order.id, seller.id, cash_collected=cash_collected)
        assert result['success'], result
        return result['data']
    return _deliver


@pytest.fixture
def delivered_order(order, deliver):
    return deliver(order)
