"""Unit tests for single-use one-time passcodes."""

from dataclasses import replace

import pytest

from conftest import RecordingEmail
from uniupdates.service.errors import ServerError
from uniupdates.service.otp import OTPService
from uniupdates.storage.models import ADMIN_TENANT, SITE_TENANT

EMAIL = "a@x.com"


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def otp(memory_store, outbox, policies):
    return OTPService(memory_store, outbox, policies[SITE_TENANT])


@pytest.mark.asyncio
async def test_issue_returns_six_digit_code(otp, outbox):
    code = await otp.issue(EMAIL, "verification")
    assert len(code) == 6 and code.isdigit()
    assert 100000 <= int(code) <= 999999
    assert outbox.last_code(EMAIL) == code


@pytest.mark.asyncio
async def test_only_hash_is_stored(otp, memory_store):
    code = await otp.issue(EMAIL, "verification")
    record = memory_store.latest_otp(SITE_TENANT, EMAIL)
    assert record.code_hash != code
    assert code not in record.code_hash


@pytest.mark.asyncio
async def test_code_is_single_use(otp):
    code = await otp.issue(EMAIL, "verification")
    assert otp.verify(EMAIL, code) is True
    assert otp.verify(EMAIL, code) is False


@pytest.mark.asyncio
async def test_wrong_guess_burns_the_code(otp):
    code = await otp.issue(EMAIL, "verification")
    wrong = "000000" if code != "000000" else "111111"
    assert otp.verify(EMAIL, wrong) is False
    assert otp.verify(EMAIL, code) is False


@pytest.mark.asyncio
async def test_new_code_invalidates_previous(otp):
    first = await otp.issue(EMAIL, "verification")
    second = await otp.issue(EMAIL, "verification")
    if first == second:
        pytest.skip("random codes collided")
    assert otp.verify(EMAIL, first) is False
    assert otp.verify(EMAIL, second) is False


@pytest.mark.asyncio
async def test_latest_code_verifies(otp):
    await otp.issue(EMAIL, "verification")
    latest = await otp.issue(EMAIL, "verification")
    assert otp.verify(EMAIL, latest) is True


@pytest.mark.asyncio
async def test_email_case_insensitive(otp):
    code = await otp.issue("Mixed@X.com", "verification")
    assert otp.verify("mixed@x.com", code) is True


@pytest.mark.asyncio
async def test_purpose_must_match(otp):
    code = await otp.issue(EMAIL, "verification")
    assert otp.verify(EMAIL, code, purpose="password_reset") is False


@pytest.mark.asyncio
async def test_expired_code_rejected(memory_store, outbox, policies):
    expired = OTPService(memory_store, outbox, replace(policies[SITE_TENANT], otp_ttl_minutes=-1))
    code = await expired.issue(EMAIL, "verification")
    assert expired.verify(EMAIL, code) is False


@pytest.mark.asyncio
async def test_codes_are_scoped_per_tenant(memory_store, outbox, policies):
    site = OTPService(memory_store, outbox, policies[SITE_TENANT])
    admin = OTPService(memory_store, outbox, policies[ADMIN_TENANT])
    code = await site.issue(EMAIL, "verification")
    assert admin.verify(EMAIL, code) is False
    assert site.verify(EMAIL, code) is True


@pytest.mark.asyncio
async def test_ttl_follows_tenant(memory_store, outbox, policies):
    admin = OTPService(memory_store, outbox, policies[ADMIN_TENANT])
    await admin.issue(EMAIL, "password_reset")
    record = memory_store.latest_otp(ADMIN_TENANT, EMAIL)
    assert (record.expires_at - record.created_at).total_seconds() == 10 * 60


@pytest.mark.asyncio
async def test_delivery_failure_raises(otp, outbox):
    outbox.deliver = False
    with pytest.raises(ServerError):
        await otp.issue(EMAIL, "verification")


def test_verify_without_code_issued(otp):
    assert otp.verify(EMAIL, "123456") is False
