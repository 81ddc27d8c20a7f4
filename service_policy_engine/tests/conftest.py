"""
Shared fixtures for policy engine tests.
"""

import pytest

from service_policy_engine.app.persistence.memory import InMemoryPolicyRepository
from service_policy_engine.app.policy.models import AuthenticatedUser

from .helpers import TENANT_ID


@pytest.fixture
def caller():
    """Caller whose identity is the tenant."""
    return AuthenticatedUser(user_id=TENANT_ID, email="ap@wellhead-energy.com")


@pytest.fixture
def sample_document():
    """E-invoice document row."""
    return {
        "id": "row-1",
        "document_id": "INV-2024-0042",
        "tenant_id": TENANT_ID,
        "format": "ubl",
        "status": "pending",
        "confidence_score": 0.92,
        "total_amount": 15000,
        "currency": "USD",
        "country_code": "US",
        "sender_id": "vendor-permian-services",
        "receiver_id": "buyer-wellhead",
        "issue_date": "2024-05-01",
        "due_date": "2024-05-31",
        "created_at": "2024-05-01T10:00:00Z",
    }


@pytest.fixture
def repository(sample_document):
    """In-memory repository seeded with one document."""
    repo = InMemoryPolicyRepository()
    repo.add_document(sample_document)
    return repo
