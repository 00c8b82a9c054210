import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from app.api.rate_limit import limiter
from app.core.database import Base, engine
from app.models import alert, credential, job_lease, stock, stock_price  # noqa: F401


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield
