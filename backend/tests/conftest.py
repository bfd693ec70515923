"""
Pytest configuration and fixtures
"""
import importlib.util
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import dealroom.models  # noqa: E402,F401
from dealroom.core.config import get_settings  # noqa: E402
from dealroom.core.database import Base, build_engine  # noqa: E402


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory schema per test"""
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Session:
    """Create a database session for testing"""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings(monkeypatch):
    """Settings object whose policy flags a test may flip with monkeypatch"""
    current = get_settings()

    class _Override:
        def set(self, **values):
            for key, value in values.items():
                monkeypatch.setattr(current, key, value)
            return current

    return _Override()


@pytest.fixture
def deal(db):
    """Deal with admin p1 and members p2, p3"""
    from dealroom.services.participant_service import ParticipantService

    service = ParticipantService(db)
    deal = service.create_deal("Joint venture", currency="USD", admin_id="p1")
    service.add_participant(deal.id, "p2")
    service.add_participant(deal.id, "p3")
    return deal


@pytest.fixture
def ingredient(db, deal):
    from dealroom.services.ingredient_service import IngredientService

    return IngredientService(db).register_ingredient(
        deal.id,
        "Routing engine",
        ingredient_type="software_module",
        contributed_by="p1",
    )


@pytest.fixture
def active_formulation(db, deal, ingredient):
    """Formulation holding ``ingredient`` at 100%, activated by admin override"""
    from dealroom.services.formulation_service import FormulationService

    service = FormulationService(db)
    formulation = service.create(deal.id, "Launch terms", created_by="p1")
    service.add_ingredient(formulation.id, ingredient_id=ingredient.id, ownership_percent="100")
    return service.activate(formulation.id, actor="p1", admin_override=True)


@pytest.fixture(scope="function")
def client(db: Session):
    """Create test client with database dependency override"""
    main_path = backend_dir / "main.py"
    spec = importlib.util.spec_from_file_location("main", main_path)
    main_module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(main_module)
    app = main_module.app

    from fastapi.testclient import TestClient

    from dealroom.core.database import get_db

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
