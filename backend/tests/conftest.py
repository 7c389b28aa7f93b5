"""
Shared fixtures: an in-memory Motor-compatible database and a fully wired
engine using the mock payment provider.
"""
import uuid

import pytest
from mongomock_motor import AsyncMongoMockClient

from audit_service import AuditService
from engine.payment_provider import MockPaymentProvider
from engine.policy_service import PolicyService
from services import ScholarshipEngine


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"scholarship_test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def policy_overrides():
    return {}


@pytest.fixture
def engine(db, policy_overrides):
    return ScholarshipEngine(
        db,
        provider=MockPaymentProvider(frontend_url="http://frontend.test"),
        audit_service=AuditService(db, notification_url=""),
        policy_service=PolicyService(db, overrides=policy_overrides)
    )
