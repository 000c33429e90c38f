from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alembic import command
from alembic.config import Config
from careplan_queue.database import create_session_maker, get_session

ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    db_path = tmp_path / "careplan_queue_test.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")

    alembic_cfg = Config(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))
    with sync_engine.begin() as connection:
        alembic_cfg.attributes["connection"] = connection
        command.upgrade(alembic_cfg, "head")
    sync_engine.dispose()

    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture
async def session_maker(database_url: str) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine, session_maker = create_session_maker(database_url)
    yield session_maker
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with get_session(session_maker) as session:
        yield session
