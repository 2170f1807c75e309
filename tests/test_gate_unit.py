import pytest

from conftest import build_sessions
from uniupdates.service.errors import AuthenticationError, ForbiddenError, NotFoundError
from uniupdates.service.gate import AuthorizationGate, extract_bearer
from uniupdates.service.tokens import TokenService
from uniupdates.storage.models import (
    ADMIN_ROLES,
    ADMIN_TENANT,
    SITE_TENANT,
    SUPERADMIN,
    Account,
    AdminAccount,
)

PASSWORD = "Gatekeeper-Pass-1"


@pytest.fixture
def policy(policies):
    return policies[ADMIN_TENANT]


@pytest.fixture
def gate(memory_store, policy):
    return AuthorizationGate(memory_store, TokenService(policy), policy)


@pytest.fixture
def sessions(memory_store, policy):
    return build_sessions(memory_store, policy)


@pytest.fixture
def uniadmin(memory_store, sessions):
    return memory_store.create_account(
        AdminAccount(
            id=Account.new_id(),
            username="uni",
            email="uni@college.test",
            password_hash=sessions.hash_password(PASSWORD),
            name="Uni",
            college_id="c-9",
        )
    )


def _bearer(gate, account):
    token = gate.tokens.issue_access_token(account.id, account.role, account.session_version)
    return f"Bearer {token}"


@pytest.mark.parametrize(
    "header,expected",
    [
        (None, None),
        ("", None),
        ("Basic abc", None),
        ("Bearer ", None),
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer abc", "abc"),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


def test_live_account_returned(gate, uniadmin):
    account = gate.authorize(_bearer(gate, uniadmin), ADMIN_ROLES)
    assert account.id == uniadmin.id


def test_missing_header(gate):
    with pytest.raises(AuthenticationError):
        gate.authorize(None, ADMIN_ROLES)


def test_invalid_token(gate):
    with pytest.raises(AuthenticationError):
        gate.authorize("Bearer not.a.token", ADMIN_ROLES)


def test_refresh_token_not_accepted(gate, uniadmin):
    refresh = gate.tokens.issue_refresh_token(uniadmin.id, uniadmin.session_version)
    with pytest.raises(AuthenticationError):
        gate.authorize(f"Bearer {refresh}", ADMIN_ROLES)


def test_other_tenant_token_not_accepted(gate, policies, uniadmin):
    site_tokens = TokenService(policies[SITE_TENANT])
    token = site_tokens.issue_access_token(uniadmin.id, "user", uniadmin.session_version)
    with pytest.raises(AuthenticationError):
        gate.authorize(f"Bearer {token}", ADMIN_ROLES)


def test_deleted_account_is_not_found(gate, uniadmin, memory_store):
    header = _bearer(gate, uniadmin)
    memory_store.delete_account(ADMIN_TENANT, uniadmin.id)
    with pytest.raises(NotFoundError):
        gate.authorize(header, ADMIN_ROLES)


@pytest.mark.asyncio
async def test_revoked_token_rejected_immediately(gate, sessions, uniadmin):
    header = _bearer(gate, uniadmin)
    await sessions.logout_all(uniadmin.id)
    with pytest.raises(AuthenticationError):
        gate.authorize(header, ADMIN_ROLES)


def test_role_checked_against_live_account(gate, uniadmin):
    with pytest.raises(ForbiddenError):
        gate.authorize(_bearer(gate, uniadmin), {SUPERADMIN})


def test_terminated_admin_forbidden(gate, uniadmin, memory_store):
    header = _bearer(gate, uniadmin)
    account = memory_store.get_account(ADMIN_TENANT, uniadmin.id)
    account.terminated = True
    memory_store.save_account(account, expected_revision=account.revision)
    with pytest.raises(ForbiddenError):
        gate.authorize(header, ADMIN_ROLES)
