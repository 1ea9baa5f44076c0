import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def magic_db():
    """Mock session whose begin_nested() works as a context manager."""
    return MagicMock()


@pytest.fixture
def lab():
    return SimpleNamespace(
        id=uuid.uuid4(),
        name="Central Lab",
        address="12 Main Road",
        latitude=17.385,
        longitude=78.4867,
        internal_whatsapp_number="919000000001",
    )


@pytest.fixture
def chat_session(lab):
    return SimpleNamespace(
        id=uuid.uuid4(),
        phone="919876543210",
        lab_id=lab.id,
        current_state="START",
        context={},
        status="active",
        version=0,
    )
