from typing import Generator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from db.db import init_db
from db.models import Base
from domain.base_types import Currency
from domain.rate_resolver import RateResolver
from tests.helpers.time_utils import FakeClock


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    factory = init_db()
    yield factory
    engine = factory.kw["bind"]
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def resolver() -> RateResolver:
    return RateResolver(primary_base=Currency("EUR"), secondary_base=Currency("USD"))
