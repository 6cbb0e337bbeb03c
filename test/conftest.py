import pytest
import pytest_asyncio

from _helper import ORG, make_account, make_channel, make_settings
from orderflow.context import create_context
from orderflow.worker import WorkerPool


@pytest.fixture
def settings(tmp_path):
    return make_settings(str(tmp_path / "labels"))


@pytest_asyncio.fixture
async def context(settings):
    """Fully wired context over the in-process storage and queue, mock carriers."""
    ctx = await create_context(settings)
    yield ctx
    await ctx.close()


@pytest.fixture
def storage(context):
    return context.storage


@pytest.fixture
def pool(context):
    return WorkerPool(context.queue, context.jobs.registry(), job_timeout=5, poll_interval=0.01)


@pytest_asyncio.fixture
async def channel(context):
    return await make_channel(context.storage, ORG)


@pytest_asyncio.fixture
async def skus(context):
    """Three SKUs in ORG: A (10 on hand), B (5), X (3)."""
    return {
        code: await context.ledger.create_sku(ORG, code, name=f"Item {code}", quantity_on_hand=qty)
        for code, qty in (("A", 10), ("B", 5), ("X", 3))
    }


@pytest_asyncio.fixture
async def dhl_account(context):
    return await make_account(context.storage, ORG, name="DHL main")
