"""Unit tests for login, refresh rotation and revocation."""

import asyncio
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import RecordingEmail, build_sessions
from uniupdates.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from uniupdates.service.sessions import FederatedIdentity
from uniupdates.service.tenants import ACCESS, REFRESH
from uniupdates.storage.errors import StaleRevision
from uniupdates.storage.memory import MemoryStore
from uniupdates.storage.models import (
    ADMIN_TENANT,
    SITE_TENANT,
    Account,
    AdminAccount,
    PublicAccount,
    RefreshTokenRecord,
    utcnow,
)

PASSWORD = "Correct-Horse-42"


@pytest.fixture
def admin_sessions(memory_store, policies):
    return build_sessions(memory_store, policies[ADMIN_TENANT])


@pytest.fixture
def site_sessions(memory_store, policies):
    return build_sessions(memory_store, policies[SITE_TENANT])


@pytest.fixture
def admin_account(memory_store, admin_sessions):
    return memory_store.create_account(
        AdminAccount(
            id=Account.new_id(),
            username="dean",
            email="dean@college.test",
            password_hash=admin_sessions.hash_password(PASSWORD),
            name="Dean",
            college_id="c-1",
        )
    )


@pytest.fixture
def public_account(memory_store, site_sessions):
    return memory_store.create_account(
        PublicAccount(
            id=Account.new_id(),
            username="alice",
            email="alice@x.com",
            password_hash=site_sessions.hash_password(PASSWORD),
            name="Alice",
            is_verified=True,
        )
    )


class TestPasswords:
    def test_hash_is_argon2id_and_salted(self, admin_sessions):
        first = admin_sessions.hash_password(PASSWORD)
        second = admin_sessions.hash_password(PASSWORD)
        assert first.startswith("$argon2id$")
        assert first != second

    def test_account_without_password_never_verifies(self, site_sessions):
        account = PublicAccount(id="x", username="g", email="g@x.com", is_google_login=True)
        assert site_sessions.verify_password(account, "") is False
        assert site_sessions.verify_password(account, PASSWORD) is False


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_by_username_or_email(self, admin_sessions, admin_account):
        by_name = await admin_sessions.login("dean", PASSWORD)
        by_email = await admin_sessions.login("DEAN@college.test", PASSWORD)

        assert by_name.account.id == admin_account.id
        assert by_email.account.id == admin_account.id
        assert len(by_email.account.refresh_tokens) == 2

    @pytest.mark.asyncio
    async def test_tokens_carry_session_version(self, admin_sessions, admin_account):
        issued = await admin_sessions.login("dean", PASSWORD)
        access = admin_sessions.tokens.verify(issued.access_token, ACCESS)
        refresh = admin_sessions.tokens.verify(issued.refresh_token, REFRESH)

        assert access["sv"] == refresh["sv"] == admin_account.session_version
        assert access["role"] == "uniadmin"

    @pytest.mark.asyncio
    async def test_unknown_identifier_and_bad_password_look_alike(
        self, admin_sessions, admin_account
    ):
        with pytest.raises(InvalidCredentialsError) as unknown:
            await admin_sessions.login("nobody", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await admin_sessions.login("dean", "wrong-password")

        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.message == wrong.value.message

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, admin_sessions):
        with pytest.raises(ValidationError):
            await admin_sessions.login("", PASSWORD)
        with pytest.raises(ValidationError):
            await admin_sessions.login("dean", "")

    @pytest.mark.asyncio
    async def test_refresh_token_stored_hashed(self, admin_sessions, admin_account, memory_store):
        issued = await admin_sessions.login("dean", PASSWORD)
        stored = memory_store.get_account(ADMIN_TENANT, admin_account.id).refresh_tokens[0]

        assert stored.hashed is True
        assert stored.token != issued.refresh_token
        assert stored.expires_at == issued.refresh_expires_at

    @pytest.mark.asyncio
    async def test_admin_list_capped_at_five(self, admin_sessions, admin_account, memory_store):
        issued = [await admin_sessions.login("dean", PASSWORD) for _ in range(7)]
        stored = memory_store.get_account(ADMIN_TENANT, admin_account.id)

        assert len(stored.refresh_tokens) == 5
        # the two oldest were evicted
        with pytest.raises(AuthenticationError):
            await admin_sessions.refresh(issued[0].refresh_token)

    @pytest.mark.asyncio
    async def test_public_list_uncapped_but_pruned(
        self, site_sessions, public_account, memory_store
    ):
        account = memory_store.get_account(SITE_TENANT, public_account.id)
        past = utcnow() - timedelta(days=1)
        account.refresh_tokens = [
            RefreshTokenRecord(token="stale", issued_at=past, expires_at=past)
        ]
        memory_store.save_account(account, expected_revision=account.revision)

        for _ in range(8):
            await site_sessions.login("alice", PASSWORD)

        tokens = memory_store.get_account(SITE_TENANT, public_account.id).refresh_tokens
        assert len(tokens) == 8
        assert all(record.token != "stale" for record in tokens)

    @pytest.mark.asyncio
    async def test_terminated_admin_forbidden(self, admin_sessions, admin_account, memory_store):
        account = memory_store.get_account(ADMIN_TENANT, admin_account.id)
        account.terminated = True
        memory_store.save_account(account, expected_revision=account.revision)

        with pytest.raises(ForbiddenError):
            await admin_sessions.login("dean", PASSWORD)

    @pytest.mark.asyncio
    async def test_unverified_public_account_forbidden(self, site_sessions, memory_store):
        memory_store.create_account(
            PublicAccount(
                id=Account.new_id(),
                username="bob",
                email="bob@x.com",
                password_hash=site_sessions.hash_password(PASSWORD),
                name="Bob",
            )
        )
        with pytest.raises(ForbiddenError) as excinfo:
            await site_sessions.login("bob", PASSWORD)
        assert excinfo.value.detail["reason"] == "email_not_verified"

    @pytest.mark.asyncio
    async def test_login_records_last_login(self, site_sessions, public_account):
        issued = await site_sessions.login("alice", PASSWORD, ip_address="203.0.113.9")
        assert issued.account.last_login_ip == "203.0.113.9"
        assert issued.account.last_login_at is not None


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_replaces_presented_token(self, site_sessions, public_account):
        first = await site_sessions.login("alice", PASSWORD)
        second = await site_sessions.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert len(second.account.refresh_tokens) == 1
        assert site_sessions.tokens.verify(second.access_token, ACCESS)["sub"] == public_account.id

    @pytest.mark.asyncio
    async def test_replayed_token_wipes_every_session(
        self, site_sessions, public_account, memory_store
    ):
        first = await site_sessions.login("alice", PASSWORD)
        other_device = await site_sessions.login("alice", PASSWORD)
        await site_sessions.refresh(first.refresh_token)

        with pytest.raises(AuthenticationError):
            await site_sessions.refresh(first.refresh_token)

        assert memory_store.get_account(SITE_TENANT, public_account.id).refresh_tokens == []
        with pytest.raises(AuthenticationError):
            await site_sessions.refresh(other_device.refresh_token)

    @pytest.mark.asyncio
    async def test_stale_version_rejected_and_list_cleared(
        self, admin_sessions, admin_account, memory_store
    ):
        issued = await admin_sessions.login("dean", PASSWORD)
        account = memory_store.get_account(ADMIN_TENANT, admin_account.id)
        account.session_version += 1
        memory_store.save_account(account, expected_revision=account.revision)

        with pytest.raises(AuthenticationError):
            await admin_sessions.refresh(issued.refresh_token)
        assert memory_store.get_account(ADMIN_TENANT, admin_account.id).refresh_tokens == []

    @pytest.mark.asyncio
    async def test_missing_or_garbled_token(self, site_sessions):
        with pytest.raises(AuthenticationError):
            await site_sessions.refresh(None)
        with pytest.raises(AuthenticationError):
            await site_sessions.refresh("garbage")

    @pytest.mark.asyncio
    async def test_deleted_account(self, site_sessions, public_account, memory_store):
        issued = await site_sessions.login("alice", PASSWORD)
        memory_store.delete_account(SITE_TENANT, public_account.id)
        with pytest.raises(AuthenticationError):
            await site_sessions.refresh(issued.refresh_token)

    @pytest.mark.asyncio
    async def test_raw_tokens_when_hashing_disabled(self, memory_store, policies, public_account):
        sessions = build_sessions(
            memory_store, replace(policies[SITE_TENANT], hash_refresh_tokens=False)
        )
        issued = await sessions.login("alice", PASSWORD)
        stored = memory_store.get_account(SITE_TENANT, public_account.id).refresh_tokens[0]

        assert stored.hashed is False
        assert stored.token == issued.refresh_token
        rotated = await sessions.refresh(issued.refresh_token)
        assert rotated.refresh_token != issued.refresh_token


class InterleavingStore(MemoryStore):
    """Runs ``after_read`` once, right after the next account read returns."""

    def __init__(self, fs_root):
        super().__init__(fs_root=fs_root)
        self.after_read = None

    def get_account(self, tenant, account_id):
        account = super().get_account(tenant, account_id)
        hook, self.after_read = self.after_read, None
        if hook is not None:
            hook()
        return account


class TestConcurrentRefresh:
    @pytest.mark.asyncio
    async def test_same_token_refreshed_twice_succeeds_once(self, tmp_path, policies):
        store = InterleavingStore(str(tmp_path))
        sessions = build_sessions(store, policies[SITE_TENANT])
        store.create_account(
            PublicAccount(
                id=Account.new_id(),
                username="carol",
                email="carol@x.com",
                password_hash=sessions.hash_password(PASSWORD),
                name="Carol",
                is_verified=True,
            )
        )
        issued = await sessions.login("carol", PASSWORD)
        outcomes = {}

        def competing_refresh():
            def run():
                try:
                    outcomes["inner"] = asyncio.run(sessions.refresh(issued.refresh_token))
                except AuthenticationError as exc:
                    outcomes["inner"] = exc

            worker = threading.Thread(target=run)
            worker.start()
            worker.join()

        store.after_read = competing_refresh
        try:
            outcomes["outer"] = await sessions.refresh(issued.refresh_token)
        except AuthenticationError as exc:
            outcomes["outer"] = exc

        successes = [o for o in outcomes.values() if not isinstance(o, Exception)]
        assert len(successes) == 1
        assert isinstance(outcomes["outer"], AuthenticationError)

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, memory_store, policies, public_account):
        sessions = build_sessions(memory_store, policies[SITE_TENANT])

        def always_stale(account, *, expected_revision):
            raise StaleRevision(account.id, expected_revision, expected_revision + 1)

        memory_store.save_account = always_stale
        with pytest.raises(ConflictError):
            await sessions.login("alice", PASSWORD)


class TestRevocation:
    @pytest.mark.asyncio
    async def test_logout_removes_only_that_token(
        self, site_sessions, public_account, memory_store
    ):
        kept = await site_sessions.login("alice", PASSWORD)
        dropped = await site_sessions.login("alice", PASSWORD)

        assert await site_sessions.logout(dropped.refresh_token) is True
        tokens = memory_store.get_account(SITE_TENANT, public_account.id).refresh_tokens
        assert len(tokens) == 1
        assert (await site_sessions.refresh(kept.refresh_token)).account.id == public_account.id

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, site_sessions, public_account):
        issued = await site_sessions.login("alice", PASSWORD)
        assert await site_sessions.logout(issued.refresh_token) is True
        assert await site_sessions.logout(issued.refresh_token) is False
        assert await site_sessions.logout(None) is False
        assert await site_sessions.logout("garbage") is False

    @pytest.mark.asyncio
    async def test_logout_all_bumps_version(self, admin_sessions, admin_account):
        issued = await admin_sessions.login("dean", PASSWORD)
        updated = await admin_sessions.logout_all(admin_account.id)

        assert updated.session_version == admin_account.session_version + 1
        assert updated.refresh_tokens == []
        with pytest.raises(AuthenticationError):
            await admin_sessions.refresh(issued.refresh_token)

    @pytest.mark.asyncio
    async def test_change_password_revokes_everything(self, site_sessions, public_account):
        issued = await site_sessions.login("alice", PASSWORD)
        account = issued.account

        with pytest.raises(AuthenticationError):
            await site_sessions.change_password(account, "not-it", "New-Password-99")

        updated = await site_sessions.change_password(account, PASSWORD, "New-Password-99")
        assert updated.session_version == account.session_version + 1
        with pytest.raises(AuthenticationError):
            await site_sessions.refresh(issued.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await site_sessions.login("alice", PASSWORD)
        assert (await site_sessions.login("alice", "New-Password-99")).account.id == account.id

    @pytest.mark.asyncio
    async def test_set_password_unknown_account(self, site_sessions):
        with pytest.raises(NotFoundError):
            await site_sessions.set_password("missing", "Whatever-123")


class TestOtpFlows:
    @pytest.mark.asyncio
    async def test_reset_password_consumes_code(self, memory_store, policies, public_account):
        outbox = RecordingEmail()
        sessions = build_sessions(memory_store, policies[SITE_TENANT], outbox)
        await sessions.send_otp("alice@x.com", "password_reset")
        code = outbox.last_code("alice@x.com")

        await sessions.reset_password("alice@x.com", code, "Reset-Password-77")
        assert (await sessions.login("alice", "Reset-Password-77")).account.id == public_account.id
        with pytest.raises(ValidationError):
            await sessions.reset_password("alice@x.com", code, "Another-Password-1")

    @pytest.mark.asyncio
    async def test_reset_requires_reset_purpose(self, memory_store, policies, public_account):
        outbox = RecordingEmail()
        sessions = build_sessions(memory_store, policies[SITE_TENANT], outbox)
        await sessions.send_otp("alice@x.com", "verification")

        with pytest.raises(ValidationError):
            await sessions.reset_password(
                "alice@x.com", outbox.last_code("alice@x.com"), "Reset-Password-77"
            )

    @pytest.mark.asyncio
    async def test_send_otp_unknown_email(self, site_sessions):
        with pytest.raises(NotFoundError):
            await site_sessions.send_otp("ghost@x.com", "verification")

    @pytest.mark.asyncio
    async def test_signup_then_verify_then_login(self, memory_store, policies):
        outbox = RecordingEmail()
        sessions = build_sessions(memory_store, policies[SITE_TENANT], outbox)
        created = await sessions.signup(
            username="dave", email="Dave@X.com", password=PASSWORD, name="Dave"
        )
        assert created.is_verified is False
        assert outbox.sent[-1]["purpose"] == "verification"

        with pytest.raises(ForbiddenError):
            await sessions.login("dave", PASSWORD)

        verified = await sessions.verify_email("dave@x.com", outbox.last_code("dave@x.com"))
        assert verified.is_verified is True
        assert (await sessions.login("dave", PASSWORD)).account.id == created.id

    @pytest.mark.asyncio
    async def test_signup_duplicate(self, site_sessions, public_account):
        with pytest.raises(ConflictError):
            await site_sessions.signup(
                username="alice", email="new@x.com", password=PASSWORD, name="A"
            )
        with pytest.raises(ConflictError):
            await site_sessions.signup(
                username="alice2", email="alice@x.com", password=PASSWORD, name="A"
            )


class TestFederatedLogin:
    @pytest.mark.asyncio
    async def test_first_login_creates_verified_account(self, site_sessions):
        identity = FederatedIdentity(
            subject="google-123456789", email="erin@gmail.com", name="Erin", email_verified=True
        )
        issued = await site_sessions.login_with_identity(identity)

        assert issued.account.is_google_login is True
        assert issued.account.is_verified is True
        assert issued.account.password_hash is None
        again = await site_sessions.login_with_identity(identity)
        assert again.account.id == issued.account.id

    @pytest.mark.asyncio
    async def test_links_existing_account(self, site_sessions, public_account):
        identity = FederatedIdentity(
            subject="google-42", email="alice@x.com", name="Alice", email_verified=True
        )
        issued = await site_sessions.login_with_identity(identity)
        assert issued.account.id == public_account.id
        assert issued.account.is_google_login is True

    @pytest.mark.asyncio
    async def test_unverified_identity_rejected(self, site_sessions):
        identity = FederatedIdentity(subject="s", email="f@x.com", email_verified=False)
        with pytest.raises(ForbiddenError):
            await site_sessions.login_with_identity(identity)

    @pytest.mark.asyncio
    async def test_federated_account_cannot_password_login(self, site_sessions):
        identity = FederatedIdentity(
            subject="google-777777", email="gina@gmail.com", email_verified=True
        )
        issued = await site_sessions.login_with_identity(identity)
        with pytest.raises(InvalidCredentialsError):
            await site_sessions.login(issued.account.username, "any-password-1")
