"""
Shared fixtures: an in-memory Motor database per test plus a seeded
project with one budget line.
"""
import uuid

import pytest
from mongomock_motor import AsyncMongoMockClient

from approval_ledger.budget_ledger import BudgetLedger
from approval_ledger.policy_service import PolicyService

PROJECT_ID = "project-alpha"


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"ledger_test_{uuid.uuid4().hex}"]


@pytest.fixture
def policy(db):
    return PolicyService(db, cache_ttl_seconds=0)


@pytest.fixture
async def sub_account_id(db):
    """Budget line with budgeted=10000, committed=0, actual=0"""
    ledger = BudgetLedger(db)
    account_id = await ledger.create_account(PROJECT_ID, "5000", "Production")
    return await ledger.create_sub_account(PROJECT_ID, account_id, "5010", 10000, "Camera rental")


@pytest.fixture
async def members(db):
    """
    Project membership:
    pm-1 (PM), ep-1 (EP), ctl-1 (Controller),
    hod-cam (HOD camera), coord-cam (Coordinator camera),
    hod-art (HOD art), crew-1 (Crew, camera), crew-2 (Crew, art)
    """
    records = [
        {"user_id": "pm-1", "name": "Pat", "role": "PM", "department": "production", "position": None},
        {"user_id": "ep-1", "name": "Eli", "role": "EP", "department": "production", "position": None},
        {"user_id": "ctl-1", "name": "Cam", "role": "Controller", "department": "accounting", "position": None},
        {"user_id": "hod-cam", "name": "Hana", "role": "Crew", "department": "camera", "position": "HOD"},
        {"user_id": "coord-cam", "name": "Cole", "role": "Crew", "department": "camera", "position": "Coordinator"},
        {"user_id": "hod-art", "name": "Ari", "role": "Crew", "department": "art", "position": "HOD"},
        {"user_id": "crew-1", "name": "Kim", "role": "Crew", "department": "camera", "position": None},
        {"user_id": "crew-2", "name": "Lou", "role": "Crew", "department": "art", "position": None},
    ]
    for record in records:
        record["project_id"] = PROJECT_ID
        record["active"] = True
    await db.project_members.insert_many([dict(r) for r in records])
    return records


def role_step(*roles, require_all=False, **extra):
    step = {"approver_type": "role", "roles": list(roles), "require_all": require_all}
    step.update(extra)
    return step


def fixed_step(*approvers, require_all=False, **extra):
    step = {"approver_type": "fixed", "approvers": list(approvers), "require_all": require_all}
    step.update(extra)
    return step
