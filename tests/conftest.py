"""
Shared fixtures: a real state store on a temporary SQLite database.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from miko_keeper.core.database import Database
from miko_keeper.services.distribution.exclusions import ExclusionManager
from miko_keeper.services.distribution.planner import DistributionPlanner
from miko_keeper.services.state_store import SqlStateStore

from .fakes import FakeExclusionSource, FakeHolders, FakeLedger, FakeOracle, HOLDING, KEEPER, TOKEN_MINT


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'keeper_state.db'}")
    await db.init()
    await db.create_tables()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database):
    return SqlStateStore(database)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def holders():
    return FakeHolders()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def exclusion_source():
    return FakeExclusionSource()


@pytest.fixture
def exclusions(exclusion_source):
    return ExclusionManager(system_addresses=[KEEPER, HOLDING], sources=[exclusion_source])


@pytest.fixture
def planner(holders, oracle, exclusions, store):
    return DistributionPlanner(
        holders,
        oracle,
        exclusions,
        store,
        TOKEN_MINT,
        token_decimals=0,
        minimum_holder_value_usd=Decimal("100"),
        max_retries=1,
        retry_delay=0,
    )
