"""
Root conftest.py: env vars, database and catalog fixtures.

obsgrid.db and obsgrid.config read their settings at import time, so the
environment is prepared here before anything from the package is imported.
"""
import datetime as dt
import os
import tempfile
from pathlib import Path

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="obsgrid-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP / "uploads")
os.environ.setdefault("CRITTERBASE_API_URL", "http://critterbase.invalid/api")

from obsgrid.db import SessionLocal, engine, init_db  # noqa: E402
from obsgrid.models.base import Base  # noqa: E402
from obsgrid.models.survey import Survey  # noqa: E402
from obsgrid.schemas.measurement import (  # noqa: E402
    MeasurementOption,
    QualitativeMeasurementDefinition,
    QuantitativeMeasurementDefinition,
    TaxonMeasurements,
)
from obsgrid.services.catalog.critterbase import get_catalog  # noqa: E402

MOOSE_TSN = 180703

LIFE_STAGE = QualitativeMeasurementDefinition(
    id="tm-life-stage",
    taxon_id=MOOSE_TSN,
    name="life stage",
    options=[
        MeasurementOption(id="opt-adult", label="adult", value=0),
        MeasurementOption(id="opt-juvenile", label="juvenile", value=1),
    ],
)
BODY_MASS = QuantitativeMeasurementDefinition(
    id="tm-body-mass",
    taxon_id=MOOSE_TSN,
    name="body mass",
    unit="kilogram",
    min=0,
    max=1000,
)


class FakeCatalog:
    """Stands in for CritterbaseCatalog (same sync interface)."""

    def __init__(self, by_tsn=None):
        self.by_tsn = by_tsn or {}
        self.calls = []

    def taxon_measurements(self, tsn):
        self.calls.append(tsn)
        return self.by_tsn.get(tsn, TaxonMeasurements())

    def search(self, tsn, keyword=None):
        definitions = self.taxon_measurements(tsn).all()
        if not keyword:
            return definitions
        return [d for d in definitions if keyword.lower() in d.name.lower()]


@pytest.fixture
def life_stage():
    return LIFE_STAGE


@pytest.fixture
def body_mass():
    return BODY_MASS


@pytest.fixture
def fake_catalog():
    return FakeCatalog({MOOSE_TSN: TaxonMeasurements(qualitative=[LIFE_STAGE], quantitative=[BODY_MASS])})


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def app(fake_catalog):
    from obsgrid.main import app as fastapi_app

    fastapi_app.dependency_overrides[get_catalog] = lambda: fake_catalog
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c


@pytest.fixture
def survey_id():
    db = SessionLocal()
    try:
        s = Survey(name="Moose aerial survey", start_date=dt.date(2024, 5, 1), observers="")
        db.add(s)
        db.commit()
        return s.id
    finally:
        db.close()
