import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import MagicMock

from app.main import app
from app.core.database import get_db, get_redis_client, configure_sqlite_savepoints
from app.models import (
    Base,
    Tenant,
    PlanModule,
    BusinessHours,
    ChatbotTemplate,
    ChatbotActivation,
)
from app.services.availability_service import local_now
from app.services.template_service import template_service

from tests.flow_builders import node, chain

# Test database URL (SQLite in memory)
SQLALCHEMY_DATABASE_URL = "sqlite://"

PLAN_ID = "plan-pro"


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test; savepoints enabled like production SQLite."""
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create database session for testing."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def mock_redis():
    """Redis stand-in: empty cache, healthy ping."""
    mock = MagicMock()
    mock.ping.return_value = True
    mock.get.return_value = None
    mock.delete.return_value = 1
    mock.scan_iter.return_value = []
    return mock


@pytest.fixture(autouse=True)
def template_cache(mock_redis):
    """Point the template cache at the mock so no test needs a Redis server."""
    previous = template_service._redis
    template_service.redis = mock_redis
    yield mock_redis
    template_service._redis = previous


@pytest.fixture
def client(db_session, mock_redis):
    """Test client sharing the test's database session."""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: mock_redis

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# Tenancy fixtures
@pytest.fixture
def tenant(db_session):
    """Active tenant whose plan includes the chatbot and appointments modules."""
    tenant = Tenant(name="Clínica Demo", company_name="Clínica Demo", subscription_plan_id=PLAN_ID)
    db_session.add(tenant)
    for module_code in ("chatbot", "appointments", "leads"):
        db_session.add(PlanModule(plan_id=PLAN_ID, module_code=module_code, restrictions={}))
    db_session.commit()
    return tenant


@pytest.fixture
def basic_tenant(db_session):
    """Tenant on a plan without chatbot or appointments."""
    tenant = Tenant(name="Tienda Básica", subscription_plan_id="plan-basic")
    db_session.add(tenant)
    db_session.add(PlanModule(plan_id="plan-basic", module_code="leads", restrictions={}))
    db_session.commit()
    return tenant


@pytest.fixture
def tenant_headers(tenant):
    return {"X-Tenant-ID": tenant.id}


# Scheduling fixtures
@pytest.fixture
def business_hours(db_session, tenant):
    """Open 09:00-17:00 every day of the week."""
    for day in range(7):
        db_session.add(BusinessHours(
            tenant_id=tenant.id, day_of_week=day, open_time="09:00", close_time="17:00"
        ))
    db_session.commit()


@pytest.fixture
def booking_date():
    """A day inside the default booking window."""
    return local_now().date() + timedelta(days=2)


# Chatbot fixtures
@pytest.fixture
def create_flow(db_session, tenant):
    """Factory storing a template and (by default) activating it on a channel."""

    def _create(nodes, edges, channel_type="web", name="Flujo de prueba", status="published", activate=True):
        template = ChatbotTemplate(
            tenant_id=tenant.id,
            name=name,
            status=status,
            nodes=nodes,
            edges=edges,
            version=1,
        )
        db_session.add(template)
        db_session.flush()
        if activate:
            db_session.add(ChatbotActivation(
                tenant_id=tenant.id,
                template_id=template.id,
                channel_type=channel_type,
                is_active=True,
                config={},
            ))
        db_session.commit()
        return template

    return _create


@pytest.fixture
def greeting_flow(create_flow):
    """start -> welcome -> ask_name (input) -> farewell (end)."""
    return create_flow(
        [
            node("start", "start"),
            node("welcome", "message", message="¡Hola {{user_name}}! Bienvenido a {{company_name}}"),
            node("ask_name", "input", question="¿Cómo te llamas?", variableName="customer_name"),
            node("farewell", "end", message="Gracias {{customer_name}}, te escribimos pronto."),
        ],
        chain("start", "welcome", "ask_name", "farewell"),
    )
