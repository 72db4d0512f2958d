import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.cache import InMemoryCache  # noqa: E402
from app.core.database import build_engine, get_db, init_db  # noqa: E402
from app.main import app  # noqa: E402
from app.services.commission_rate_service import (  # noqa: E402
    CommissionRateResolver,
    CommissionRateService,
    get_rate_resolver,
)
from app.services.conversion_service import ConversionService  # noqa: E402

AFFILIATE_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
REFERRED_ID = "16fd2706-8baf-433b-82eb-8c7fada847da"

ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
SERVICE_HEADERS = {"X-User-Id": "booking-service", "X-User-Role": "service"}
AFFILIATE_HEADERS = {"X-User-Id": AFFILIATE_ID, "X-User-Role": "affiliate"}


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fresh_rate_resolver():
    # The process-wide resolver would otherwise carry rates between tests
    get_rate_resolver.cache_clear()
    yield
    get_rate_resolver.cache_clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def resolver(clock):
    return CommissionRateResolver(cache=InMemoryCache(default_ttl=60, clock=clock), ttl_seconds=60)


@pytest.fixture
def rates(db, resolver):
    for conversion_type, rate_percent in (("booking", "10"), ("product_purchase", "5"), ("subscription", "15")):
        CommissionRateService.create_rate(
            db, {"conversion_type": conversion_type, "rate_percent": Decimal(rate_percent)}, resolver=resolver
        )
    return resolver


@pytest.fixture
def make_conversion(db, rates):
    counter = {"n": 0}

    def factory(value="100", conversion_type="booking", affiliate_user_id=AFFILIATE_ID, confirm=True, **extra):
        counter["n"] += 1
        payload = {
            "affiliate_user_id": affiliate_user_id,
            "referred_user_id": extra.pop("referred_user_id", REFERRED_ID),
            "conversion_type": conversion_type,
            "conversion_value": Decimal(value),
            "reference_id": extra.pop("reference_id", f"booking-{counter['n']}"),
            "reference_type": extra.pop("reference_type", "appointment"),
        }
        payload.update(extra)
        conversion, _ = ConversionService.record_conversion(db, payload, resolver=rates)
        if confirm:
            conversion = ConversionService.confirm_conversion(db, conversion.id)
        return conversion

    return factory


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
