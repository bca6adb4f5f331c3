"""
Shared pytest fixtures: temporary SQLite database, orchestrator, FastAPI TestClient.
"""
import os
import tempfile

# Point the app at a throwaway database before app.config is imported
_TMP = tempfile.mkdtemp(prefix="sales-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/app.db")
os.environ.setdefault("DATA_DIR", _TMP)

from io import BytesIO  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from openpyxl import Workbook  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.sales.database import Base  # noqa: E402
from app.sales.jobs.orchestrator import IngestionOrchestrator  # noqa: E402
from app.sales import models as _models  # noqa: E402,F401 register models


def build_xlsx(rows) -> bytes:
    """Build an in-memory workbook whose first sheet holds *rows*."""
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(list(row))
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


# Worker threads open their own connections, so a file database is used
# instead of a shared in-memory one
@pytest.fixture()
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def orchestrator(session_factory):
    orch = IngestionOrchestrator(session_factory)
    yield orch
    orch.shutdown()


@pytest.fixture()
def client(orchestrator):
    app.state.orchestrator = orchestrator
    with TestClient(app) as c:
        yield c
    app.state.orchestrator = None


@pytest.fixture()
def make_xlsx():
    return build_xlsx


@pytest.fixture()
def sales_sheet():
    """One customer section with a two-item cash bill."""
    return [
        ["SALES STATEMENT"],
        ["RUCHIKA"],
        ["AT.PLOT NO.12, BHUBANESWAR"],
        ["Phone : 9437000000 E-Mail : ruchika@example.com"],
        ["BILL NO", "DATE", "DESCRIPTION", "QTY", "BATCH", "AMOUNT", "CASH", "CREDIT"],
        ["9876543210 JANE DOE"],
        ["01-07-2023"],
        ["CS/1001", None, None, None, None, None, "150.00", "0"],
        [None, None, "PARACETAMOL 500MG", "2.0", "9/26 B12", "40.00"],
        [None, None, "DOLO 650 TABLET", "1.0", "10/26 A77", "70.00"],
        [None, None, "TOTAL AMOUNT", "150.00"],
    ]
