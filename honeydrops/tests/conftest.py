import pytest
from uuid import UUID, uuid4

from honeydrops.config import HoneySettings
from honeydrops.service import ApplicationService
from honeydrops.storage import InMemoryJobCatalog, InMemoryStorage


# Test constants
CLIENT_ID = UUID("11111111-1111-1111-1111-111111111111")
ADMIN_ID = UUID("99999999-9999-9999-9999-999999999999")
FREELANCER_1 = UUID("550e8400-e29b-41d4-a716-446655440001")
FREELANCER_2 = UUID("550e8400-e29b-41d4-a716-446655440002")
FREELANCER_3 = UUID("550e8400-e29b-41d4-a716-446655440003")
JOB_ID = UUID("aaaaaaaa-0000-0000-0000-000000000001")
OTHER_JOB_ID = UUID("aaaaaaaa-0000-0000-0000-000000000002")
CLOSED_JOB_ID = UUID("aaaaaaaa-0000-0000-0000-000000000003")

COVER_LETTER = "I have 5 years of design experience"


@pytest.fixture
def settings() -> HoneySettings:
    return HoneySettings(
        bid_fee=3,
        lock_timeout=1.0,
        max_attempts=2,
        backoff_base=0.001,
        admin_ids=frozenset({ADMIN_ID}),
    )


@pytest.fixture
def fast_busy_settings() -> HoneySettings:
    return HoneySettings(lock_timeout=0.01, max_attempts=2, backoff_base=0.001)


@pytest.fixture
def catalog() -> InMemoryJobCatalog:
    jobs = InMemoryJobCatalog()
    jobs.add_job(JOB_ID, CLIENT_ID)
    jobs.add_job(OTHER_JOB_ID, CLIENT_ID)
    jobs.add_job(CLOSED_JOB_ID, CLIENT_ID, is_open=False)
    return jobs


@pytest.fixture
def service(catalog, settings) -> ApplicationService:
    return ApplicationService(catalog, InMemoryStorage(), settings)


def fund(service: ApplicationService, user_id: UUID, amount: int = 3) -> None:
    service.balances.top_up(user_id, amount, payment_id=f"seed-{uuid4()}")
