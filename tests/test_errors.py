import pytest

from polypkg.core.errors import (
    CommandTimeoutError,
    InvalidPackageNameError,
    PolypkgError,
    RegistryError,
    Status,
    StatusError,
    TransientError,
    UserError,
    format_error_message,
    retry_on_transient,
)


def test_with_context_merges_and_renders():
    err = PolypkgError("boom", context={"package": "vim"}).with_context(manager="apt")

    assert err.context == {"package": "vim", "manager": "apt"}
    assert str(err) == "boom [package=vim, manager=apt]"


def test_status_error_includes_cause():
    cause = ValueError("disk full")
    err = StatusError(Status.GENERAL_ERROR, "install failed", cause=cause)

    assert err.status is Status.GENERAL_ERROR
    assert err.cause is cause
    assert err.message == "install failed: disk full"


def test_status_error_default_message():
    assert StatusError(Status.PERMISSION_ERROR).message == "permission error"


@pytest.mark.asyncio
async def test_retry_on_transient_async_recovers():
    attempts = []

    @retry_on_transient(max_retries=3, base_delay=0)
    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise CommandTimeoutError(command="apt-get update", timeout=1)
        return "ok"

    assert await flaky() == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retry_on_transient_gives_up():
    attempts = []

    @retry_on_transient(max_retries=2, base_delay=0)
    async def always_fails():
        attempts.append(1)
        raise TransientError("lock held")

    with pytest.raises(TransientError):
        await always_fails()
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_retry_on_transient_ignores_other_errors():
    attempts = []

    @retry_on_transient(max_retries=5, base_delay=0)
    async def bad_input():
        attempts.append(1)
        raise UserError("bad")

    with pytest.raises(UserError):
        await bad_input()
    assert attempts == [1]


def test_format_error_message_uses_specific_template():
    err = InvalidPackageNameError("bad name", package="vim;rm")
    assert "Invalid package name: vim;rm" in format_error_message(err)


def test_format_error_message_falls_back_along_hierarchy():
    assert format_error_message(RegistryError("sealed")) == "❌ sealed"
