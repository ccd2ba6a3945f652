from __future__ import annotations

import pytest_asyncio

from chatrelay.db.engine import Database


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path), journal_mode="DELETE")
    await database.initialize()
    yield database
    await database.close()
