import pytest
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Use file-based SQLite for testing (more reliable than :memory:)
import tempfile
import atexit
import os as os_module

# Create a temporary database file
_test_db_file = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
_test_db_file.close()
TEST_DATABASE_URL = f"sqlite:///{_test_db_file.name}"

# Clean up temp file on exit
def _cleanup_test_db():
    try:
        if os_module.path.exists(_test_db_file.name):
            os_module.unlink(_test_db_file.name)
    except OSError:
        pass

atexit.register(_cleanup_test_db)

# Set test settings before any imports read them
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from database.models import Base, Listing, ListingStatus, ApprovalStatus
from server.clock import utcnow
import jwt


def make_token(user_id):
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(days=30)}
    return jwt.encode(payload, os.getenv("SECRET_KEY", "test-secret-key"), algorithm="HS256")


def make_listing(db_session, **overrides):
    """Insert a listing directly, bypassing moderation."""
    fields = dict(
        seller_id="seller",
        make="Porsche",
        model="911",
        year=1989,
        mileage=82000,
        images=[],
        auction_end_time=utcnow() + timedelta(days=2),
        starting_bid=Decimal("0"),
        current_bid=Decimal("0"),
        bid_count=0,
        status=ListingStatus.ACTIVE.value,
        approval_status=ApprovalStatus.APPROVED.value,
        version=0,
    )
    fields.update(overrides)
    listing = Listing(**fields)
    db_session.add(listing)
    db_session.commit()
    db_session.refresh(listing)
    return listing


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    # Use a unique database file per test to avoid conflicts
    test_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
    test_db.close()
    test_db_url = f"sqlite:///{test_db.name}"

    engine = create_engine(test_db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os_module.unlink(test_db.name)
    except OSError:
        pass


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine, for threads and the sweeper loop."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture(scope="function")
def override_get_db(db_engine, db_session):
    """Override get_db dependency for FastAPI tests."""
    from server.api import app
    from database.session import get_db

    def _get_test_db():
        try:
            yield db_session
        finally:
            pass

    # Clear any existing overrides first
    app.dependency_overrides.clear()
    app.dependency_overrides[get_db] = _get_test_db
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def approved_listing(db_session):
    """An approved, active listing by "seller" ending in two days."""
    return make_listing(db_session)


@pytest.fixture
def pending_listing(db_session):
    return make_listing(db_session, approval_status=ApprovalStatus.PENDING.value)


@pytest.fixture
def admin_user(db_session):
    from server.listings import grant_admin
    grant_admin(db_session, "admin")
    return "admin"


@pytest.fixture
def auth_token():
    """Generate a test JWT token."""
    return make_token("testuser")


@pytest.fixture
def auth_headers(auth_token):
    """Get authorization headers."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def seller_headers():
    return {"Authorization": f"Bearer {make_token('seller')}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {make_token(admin_user)}"}


@pytest.fixture
def client(override_get_db):
    """Create a test client with database override."""
    from fastapi.testclient import TestClient
    from server.api import app
    return TestClient(app)


@pytest.fixture
def listing_factory(db_session):
    """Build listings with overrides, e.g. listing_factory(current_bid=Decimal("1000"))."""
    def _make(**overrides):
        return make_listing(db_session, **overrides)
    return _make


@pytest.fixture
def headers_for():
    """Authorization headers for an arbitrary user id."""
    def _headers(user_id):
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers
