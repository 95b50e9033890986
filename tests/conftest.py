import os
import shutil
import tempfile

import pytest
import pytest_asyncio

from helpers import FakePanel


@pytest_asyncio.fixture
async def panel():
    panel = FakePanel()
    await panel.start()
    yield panel
    await panel.close()


@pytest.fixture
def ipc_path():
    # Unix socket paths are limited to ~100 chars, tmp_path can get longer than that
    directory = tempfile.mkdtemp(prefix="hwi")
    yield os.path.join(directory, "s.sock")
    shutil.rmtree(directory, ignore_errors=True)
