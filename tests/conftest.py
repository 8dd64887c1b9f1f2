import os

# Keep test runs from exporting spans or instrumenting libraries
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest_asyncio

from models import DatabaseQueue


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()
