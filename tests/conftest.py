import pytest

from catalog import Catalog
from control_engine import ControlEngine
from fake_gateway import FakeAdvisor, FakeGateway
from settings import Settings


@pytest.fixture
def settings():
    return Settings(
        ssh_host="pve-test",
        status_timeout=1.0,
        command_timeout=1.0,
        batch_deadline=2.0,
        max_concurrency=8,
        script_timeout=5.0,
    )


@pytest.fixture
def gateway():
    gw = FakeGateway()
    yield gw
    gw.release.set()


@pytest.fixture
def catalog():
    return Catalog.default()


@pytest.fixture
def advisor():
    return FakeAdvisor()


@pytest.fixture
def engine(settings, gateway, catalog, advisor):
    eng = ControlEngine(settings=settings, gateway=gateway, catalog=catalog, advisor=advisor)
    yield eng
    eng.close()
