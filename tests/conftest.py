import pytest

from helpers import FakeLinkSocket

from scratchlink_noble.bindings import ScratchLinkBindings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    monkeypatch.delenv("SL_LINK_URL", raising=False)
    yield


@pytest.fixture
def link_sockets():
    """Every FakeLinkSocket handed out by `socket_factory`, in creation order."""
    return []


@pytest.fixture
def socket_factory(link_sockets):
    def factory(type_, url):
        sock = FakeLinkSocket(type_, url)
        link_sockets.append(sock)
        return sock
    return factory


@pytest.fixture
def bindings(socket_factory):
    return ScratchLinkBindings(url="ws://127.0.0.1:20111", socket_factory=socket_factory)
