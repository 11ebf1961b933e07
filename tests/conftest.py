import os
import sys

# Antes de cualquier import de src: el engine global nunca apunta al fichero real
os.environ.setdefault("DATABASE_URL", "sqlite://")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import Settings
from models import Base
from modules.liquidity import LiquidityManager
from modules.position_store import PositionStore
from modules.transactions import TransactionSender
from modules.venue import PoolClientCache

from fakes import FakeClock, FakeOracle, FakeVenue, FakeWallet


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        WALLET_ADDRESS="WALLET",
        TX_BACKOFF_SECONDS=0,
        TELEGRAM_BOT_TOKEN=None,
        TELEGRAM_CHAT_ID=None,
        MORALIS_API_KEY=None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def wallet():
    return FakeWallet("WALLET")


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def store(session_factory):
    return PositionStore("WALLET", session_factory=session_factory)


@pytest.fixture
def liquidity(venue, wallet, test_settings):
    sender = TransactionSender(
        venue, wallet,
        priority_fee_microlamports=test_settings.PRIORITY_FEE_MICROLAMPORTS,
        max_retries=test_settings.TX_MAX_RETRIES,
        backoff_seconds=test_settings.TX_BACKOFF_SECONDS,
    )
    return LiquidityManager(venue, sender, PoolClientCache(venue))
