"""
Pytest configuration and fixtures for Study Buddy backend tests.

Provides:
- Test database setup/teardown
- FastAPI test client with a fresh guest store per test
- User and token fixtures
- AI service and OpenAI mocks
"""

import pytest
import os
import shutil
import tempfile
from typing import Dict, Generator
from unittest.mock import MagicMock, patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session

# Set test environment before importing app
TEST_UPLOAD_DIR = tempfile.mkdtemp(prefix="studybuddy-uploads-")
os.environ["DATABASE_URL"] = "sqlite:///./test_studybuddy.db"
os.environ["OPENAI_API_KEY"] = "test-key-not-real"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-studybuddy-at-least-32-chars"
os.environ["UPLOAD_DIR"] = TEST_UPLOAD_DIR
os.environ["ENVIRONMENT"] = "test"

from studybuddy.main import app
from studybuddy.database import Base, get_db
from studybuddy.models.models import User
from studybuddy.services.ai_service import ai_service
from studybuddy.services.auth import create_access_token, hash_password
from studybuddy.services.session_resolver import degradation_log
from studybuddy.utils.guest_store import GuestStore, get_guest_store


# Test database setup
TEST_DATABASE_URL = "sqlite:///./test_studybuddy.db"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_PASSWORD = "password123"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database tables once per test session"""
    Base.metadata.create_all(bind=test_engine)
    yield
    # Cleanup after all tests
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()
    if os.path.exists("./test_studybuddy.db"):
        os.remove("./test_studybuddy.db")
    shutil.rmtree(TEST_UPLOAD_DIR, ignore_errors=True)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Provide a database session for each test; every table is emptied afterwards"""
    session = TestingSessionLocal()

    yield session

    session.close()
    with test_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(scope="function")
def guest_store() -> GuestStore:
    return GuestStore()


@pytest.fixture(scope="function")
def client(db: Session, guest_store: GuestStore) -> Generator[TestClient, None, None]:
    """Provide FastAPI test client with database and guest store overrides"""
    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close - let the fixture handle it

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_guest_store] = lambda: guest_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_ai_state():
    """Circuit breaker state and degradation counters are process-wide"""
    ai_service.reset_circuit_breaker()
    ai_service.retry_handler.reset_metrics()
    degradation_log.clear()
    yield
    ai_service.reset_circuit_breaker()
    degradation_log.clear()


# =========================================================================
# User Fixtures
# =========================================================================

@pytest.fixture
def test_user(db: Session) -> User:
    """Create a test user"""
    user = User(
        id="test-user-123",
        username="testuser",
        email="test@studybuddy.com",
        password_hash=hash_password(TEST_PASSWORD),
        first_name="Test",
        last_name="User",
        preferences={},
        study_stats={}
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def auth_headers(test_user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(test_user.id)}"}


# =========================================================================
# Mock Fixtures
# =========================================================================

@pytest.fixture
def mock_ai():
    """Replace the AI service call; set .return_value or .side_effect per test"""
    with patch.object(ai_service, "generate_text") as mock_generate:
        mock_generate.return_value = "Mocked AI reply"
        yield mock_generate


@pytest.fixture
def mock_openai():
    """Mock OpenAI API calls for testing without API costs"""
    import studybuddy.utils.openai_client as openai_module

    # Reset the cached client
    openai_module._client = None

    mock_response = MagicMock()
    mock_response.choices = [MagicMock()]
    mock_response.choices[0].message.content = "mocked response"

    mock_instance = MagicMock()
    mock_instance.chat.completions.create.return_value = mock_response

    # get_openai_client returns the cached _client when set
    with patch.object(openai_module, "_client", mock_instance):
        yield mock_instance

    # Reset after test to avoid affecting other tests
    openai_module._client = None


@pytest.fixture
def failing_commit(db: Session):
    """Make every commit on the test session fail as if the database were down"""
    error = OperationalError("COMMIT", {}, Exception("database is locked"))
    with patch.object(db, "commit", side_effect=error) as mock_commit:
        yield mock_commit
