import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from timekeeper.service.errors import (
    InfrastructureUnavailableError,
    InvalidTokenError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
    ValidationError,
)
from timekeeper.service.password_reset import RESET_ACKNOWLEDGEMENT
from timekeeper.storage.errors import StoreUnavailable

from conftest import STRONG_PASSWORD

NEW_PASSWORD = "Brand-New-Secret-7?"


def _sent_token(stack):
    return stack.resets.notifier.sent[-1][1]


class TestRequest:
    def test_known_and_unknown_emails_get_identical_answers(self, stack, alice):
        known = stack.resets.request("alice@example.com")
        unknown = stack.resets.request("nobody@example.com")
        assert known == unknown == RESET_ACKNOWLEDGEMENT
        assert len(stack.resets.notifier.sent) == 1

    def test_only_the_hash_is_stored(self, stack, alice):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)
        stored = list(stack.store.password_resets.values())
        assert len(stored) == 1
        assert stored[0].token_hash != token
        assert stored[0].expires_at - stored[0].created_at == stack.resets.ttl

    def test_notifier_failure_does_not_change_the_answer(self, stack, alice, monkeypatch):
        def broken(user, token, expires_at):
            raise RuntimeError("smtp down")

        monkeypatch.setattr(stack.resets.notifier, "send_reset", broken)
        assert stack.resets.request("alice@example.com") == RESET_ACKNOWLEDGEMENT


class TestConsume:
    async def test_token_sets_password_and_is_single_use(self, stack, alice):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)

        await stack.resets.consume(token, NEW_PASSWORD)
        assert stack.passwords.verify_password(alice.id, NEW_PASSWORD)
        assert not stack.passwords.verify_password(alice.id, STRONG_PASSWORD)

        with pytest.raises(ResetTokenInvalidError):
            await stack.resets.consume(token, "Another-Secret-99!")

    async def test_expired_token_is_rejected(self, stack, alice, clock):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)
        clock.advance(hours=1, seconds=1)
        with pytest.raises(ResetTokenExpiredError):
            await stack.resets.consume(token, NEW_PASSWORD)

    async def test_unknown_token_is_rejected(self, stack):
        with pytest.raises(ResetTokenInvalidError):
            await stack.resets.consume("x" * 43, NEW_PASSWORD)
        with pytest.raises(ResetTokenInvalidError):
            await stack.resets.consume("", NEW_PASSWORD)

    async def test_weak_password_keeps_token_usable(self, stack, alice):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)
        with pytest.raises(ValidationError):
            await stack.resets.consume(token, "short")
        await stack.resets.consume(token, NEW_PASSWORD)

    async def test_reset_signs_out_sessions_and_clears_lockout(self, stack, alice, clock):
        issued = await stack.tokens.issue(alice)
        stack.lockout.record_failure(alice.id, clock())
        stack.resets.request("alice@example.com")

        await stack.resets.consume(_sent_token(stack), NEW_PASSWORD)

        assert stack.registry.list_for_user(alice.id) == []
        assert stack.store.get_lockout_state(alice.id).failed_attempts == 0
        with pytest.raises(InvalidTokenError):
            await stack.tokens.authenticate(issued.access_token)

    async def test_store_failure_spends_the_token_but_keeps_the_old_password(
        self, stack, alice, monkeypatch
    ):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)

        def unavailable(*args, **kwargs):
            raise StoreUnavailable("database down")

        monkeypatch.setattr(stack.store, "save_password", unavailable)
        with pytest.raises(InfrastructureUnavailableError):
            await stack.auth.complete_password_reset(token, NEW_PASSWORD)
        monkeypatch.undo()

        assert stack.passwords.verify_password(alice.id, STRONG_PASSWORD)
        with pytest.raises(ResetTokenInvalidError):
            await stack.resets.consume(token, NEW_PASSWORD)

        stack.resets.request("alice@example.com")
        await stack.resets.consume(_sent_token(stack), NEW_PASSWORD)
        assert stack.passwords.verify_password(alice.id, NEW_PASSWORD)


class TestConcurrentConsume:
    def test_exactly_one_consumer_succeeds(self, stack, alice):
        stack.resets.request("alice@example.com")
        token = _sent_token(stack)

        def attempt(_):
            try:
                asyncio.run(stack.resets.consume(token, NEW_PASSWORD))
                return True
            except (ResetTokenInvalidError, ValidationError):
                # A slow loser can also trip the history check on the winner's password
                return False

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(attempt, range(4)))
        assert outcomes.count(True) == 1
