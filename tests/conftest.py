"""
Shared fixtures.

The environment is pinned before the application package is imported so the
engine binds to an in-memory SQLite database and no real credentials leak in.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
for _key in ("MONEYSPACE_SECRET_ID", "MONEYSPACE_SECRET_KEY", "MAILBIT_API_KEY", "MAILBIT_CLIENT_ID"):
    os.environ.pop(_key, None)

import hashlib
import hmac
from decimal import Decimal

import pytest

from storefront import models, schemas
from storefront.config import Settings
from storefront.database import Base, SessionLocal, engine
from storefront.orders import OrderAssembler

GIFT_PRODUCT_ID = 9
WEBHOOK_SECRET = "whsec-test"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def checkout(cart_items, **overrides) -> schemas.OrderCreate:
    fields = {
        "phone": "081-234-5678",
        "email": "somchai@example.com",
        "customer_name": "Somchai Jaidee",
        "address_line": "99/1 Sukhumvit Rd",
        "province": "Bangkok",
        "district": "Khlong Toei",
        "subdistrict": "Khlong Tan",
        "postal_code": "10110",
        "cart_items": cart_items,
    }
    fields.update(overrides)
    return schemas.OrderCreate(**fields)


def line(product_id: int, quantity: int, unit_price="0") -> schemas.CartItem:
    return schemas.CartItem(product_id=product_id, quantity=quantity, unit_price=Decimal(unit_price))


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        free_gift_product_id=GIFT_PRODUCT_ID,
        free_gift_min_subtotal=Decimal("1000"),
        moneyspace_secret_id="",
        moneyspace_secret_key="",
        mailbit_api_key="",
        mailbit_client_id="",
    )


@pytest.fixture
def gateway_settings(settings):
    return settings.model_copy(update={
        "moneyspace_secret_id": "ms-id",
        "moneyspace_secret_key": WEBHOOK_SECRET,
    })


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    session.add_all([
        models.Product(id=1, name="Herbal Balm", sku="BALM-01", price=Decimal("600.00")),
        models.Product(id=2, name="Massage Oil", sku="OIL-01", price=Decimal("500.00")),
        models.Product(id=3, name="Old Soap", sku="SOAP-01", price=Decimal("100.00"), is_active=False),
        models.Product(
            id=GIFT_PRODUCT_ID,
            name="Tote Bag",
            sku="GIFT-TOTE",
            price=Decimal("290.00"),
            is_free_gift=True,
        ),
    ])
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def assembler(settings):
    return OrderAssembler(settings)


@pytest.fixture
def pending_order(db, assembler):
    """A committed order for 2 x product 1 (total 1200, gift included)."""
    created = assembler.create_order(db, checkout([line(1, 2)]))
    return db.query(models.Order).filter(models.Order.id == created.order_id).one()
