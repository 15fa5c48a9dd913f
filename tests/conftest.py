import pytest

from fakes import FakeSession
from offline_mirror.settings import Settings

BASE = "https://example.com"


@pytest.fixture
def settings(tmp_path):
    return Settings(base_url=BASE, root=tmp_path, settle_ms=0, screenshot=False)


@pytest.fixture
def session():
    return FakeSession()
