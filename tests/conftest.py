import pytest

from kpub.config import ENV_API_HASH, ENV_API_ID
from tests.fakes import BOOKS, NEWS, FakeSession, FakeUploader


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_API_ID, raising=False)
    monkeypatch.delenv(ENV_API_HASH, raising=False)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def session() -> FakeSession:
    return FakeSession({"@books": BOOKS, "@news": NEWS})


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()
