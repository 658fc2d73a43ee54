"""
Test configuration and fixtures for the credential fulfillment engine
"""
import os
import uuid
from typing import Generator
from unittest.mock import MagicMock

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy.orm import Session

from credential_fulfillment.core.models import (
    Actor,
    ActorRole,
    Provider,
    ReviewStatus,
    ServiceType,
)
from credential_fulfillment.core.validator import CredentialBatchParser
from credential_fulfillment.database.connection import (
    create_db_engine,
    create_session_factory,
    drop_db,
    init_db,
)
from credential_fulfillment.database.immutability import register_immutability_listeners
from credential_fulfillment.database.models import Product, Vendor
from credential_fulfillment.security.encryption import CredentialEncryptor, KeyProvider
from credential_fulfillment.services.credential_service import CredentialFulfillmentService
from credential_fulfillment.services.notifications import NotificationDispatcher


TEST_ENCRYPTION_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff"


# =============================================================================
# Test Database Setup
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """Create a file-backed SQLite engine per test"""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'credentials.db'}")
    register_immutability_listeners()
    init_db(engine)
    yield engine
    drop_db(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory bound to the test engine"""
    return create_session_factory(engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a new database session for each test"""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# =============================================================================
# Engine Components
# =============================================================================

@pytest.fixture
def encryptor():
    """Encryptor with a fixed test key"""
    return CredentialEncryptor(KeyProvider(TEST_ENCRYPTION_KEY))


@pytest.fixture
def parser():
    """Parser with the default Netflix PIN rule"""
    return CredentialBatchParser(pin_required_providers={"netflix"}, max_rows=100)


@pytest.fixture
def notification_handler():
    """Mock notification handler recording dispatched events"""
    handler = MagicMock(name="notification_handler")
    handler.__name__ = "notification_handler"
    return handler


@pytest.fixture
def service(session_factory, encryptor, parser, notification_handler):
    """Credential fulfillment service wired to the test database"""
    notifier = NotificationDispatcher(handlers=[notification_handler])
    return CredentialFulfillmentService(session_factory, encryptor, parser, notifier=notifier)


# =============================================================================
# Test Data Fixtures
# =============================================================================

@pytest.fixture
def vendor(session_factory):
    """Active vendor"""
    with session_factory() as db:
        vendor = Vendor(name="Stream Supply", email="vendor@example.com")
        db.add(vendor)
        db.commit()
        return vendor


@pytest.fixture
def other_vendor(session_factory):
    """Second vendor used for ownership checks"""
    with session_factory() as db:
        vendor = Vendor(name="Other Supply", email="other@example.com")
        db.add(vendor)
        db.commit()
        return vendor


@pytest.fixture
def make_product(session_factory, vendor):
    """Factory creating products for the test vendor"""
    
    def _make(service_type=ServiceType.ACCOUNT_SHARE, provider=Provider.NETFLIX,
              review_status=ReviewStatus.APPROVED, owner=None, title=None):
        with session_factory() as db:
            product = Product(
                vendor_id=(owner or vendor).id,
                title=title or f"{provider.value} {service_type.value}",
                service_type=service_type,
                provider=provider,
                review_status=review_status,
                stock=0,
                last_batch_number=0,
            )
            db.add(product)
            db.commit()
            return product
    
    return _make


@pytest.fixture
def netflix_product(make_product):
    return make_product(ServiceType.ACCOUNT_SHARE, Provider.NETFLIX)


@pytest.fixture
def spotify_product(make_product):
    return make_product(ServiceType.ACCOUNT_SHARE, Provider.SPOTIFY)


@pytest.fixture
def license_product(make_product):
    return make_product(ServiceType.LICENSE_KEY, Provider.MICROSOFT)


@pytest.fixture
def invite_product(make_product):
    return make_product(ServiceType.EMAIL_INVITE, Provider.SPOTIFY)


@pytest.fixture
def admin():
    """Administrator actor"""
    return Actor(id=uuid.uuid4(), role=ActorRole.ADMIN, ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def vendor_actor(vendor):
    """Actor for the test vendor"""
    return Actor(id=vendor.id, role=ActorRole.VENDOR, ip_address="10.0.0.2", user_agent="pytest")


@pytest.fixture
def system_actor():
    return Actor.system()


def netflix_row(email: str, profiles: int = 1, with_pins: bool = True) -> dict:
    """Manual-mode account-share row with numbered profiles"""
    row = {"accountEmail": email, "accountPassword": "s3cret!"}
    for index in range(1, profiles + 1):
        row[f"profile{index}Name"] = f"Profile {index}"
        if with_pins:
            row[f"profile{index}Pin"] = f"{1000 + index}"
    return row
