import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bulkprice.db.migrate import run_migrations
from bulkprice.logic.chain import load_chain_rules
from bulkprice.runs.orchestrator import RunOrchestrator
from bulkprice.storage.backups import FileBackupStore
from bulkprice.storage.run_logs import FileRunLogStore
from bulkprice.utils.rate_limit import Throttle
from tests.factories import FakeCatalog, RecordingSleep, make_variant


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sleeper():
    return RecordingSleep()


@pytest.fixture()
def catalog():
    return FakeCatalog(
        [
            make_variant(1, 1500, 1790),
            make_variant(2, 990, None),
            make_variant(3, 2400, 2990),
        ]
    )


@pytest.fixture()
def backup_store(tmp_path):
    return FileBackupStore(tmp_path / "backups")


@pytest.fixture()
def log_store(tmp_path):
    return FileRunLogStore(tmp_path / "logs")


@pytest.fixture()
def orchestrator(catalog, backup_store, log_store, sleeper):
    return RunOrchestrator(
        catalog,
        backup_store,
        log_store,
        rules=load_chain_rules(),
        throttle=Throttle(delay=0.12, sleep=sleeper),
    )
