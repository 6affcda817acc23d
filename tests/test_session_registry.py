from datetime import timedelta

from timekeeper.service.passwords import hash_token
from timekeeper.storage.models import ActiveSession

from conftest import build_stack


class TestSessionCap:
    async def test_fourth_login_evicts_least_recently_seen(self, stack, alice, clock):
        first = await stack.tokens.issue(alice, device_label="one")
        clock.advance(minutes=1)
        second = await stack.tokens.issue(alice, device_label="two")
        clock.advance(minutes=1)
        third = await stack.tokens.issue(alice, device_label="three")
        clock.advance(minutes=1)
        # Using the oldest session makes the second one the least recently seen
        await stack.tokens.authenticate(first.access_token)
        clock.advance(minutes=1)

        fourth = await stack.tokens.issue(alice, device_label="four")

        remaining = {s.id for s in stack.registry.list_for_user(alice.id)}
        assert remaining == {first.session.id, third.session.id, fourth.session.id}
        assert fourth.evicted_session_ids == [second.session.id]

    async def test_evicted_refresh_token_cannot_rotate_silently(self, clock):
        stack = build_stack(clock=clock, max_sessions=1)
        user = stack.auth.create_user("dave", "Correct-Horse-42!")
        first = await stack.tokens.issue(user)
        clock.advance(seconds=1)
        await stack.tokens.issue(user)
        assert stack.store.get_session(first.session.id) is None
        record = stack.store.get_refresh_token_by_hash(hash_token(first.refresh_token))
        assert record.used_at is not None


class TestListing:
    async def test_most_recently_seen_first(self, stack, alice, clock):
        first = await stack.tokens.issue(alice)
        clock.advance(minutes=1)
        second = await stack.tokens.issue(alice)
        clock.advance(minutes=1)
        await stack.tokens.authenticate(first.access_token)

        ordered = [s.id for s in stack.registry.list_for_user(alice.id)]
        assert ordered == [first.session.id, second.session.id]

    def test_ties_break_on_creation_time_then_id(self, clock):
        now = clock()
        sessions = [
            ActiveSession(id="a", user_id="u", refresh_token_id="r1", access_jti="j1",
                          expires_at=now, created_at=now, last_seen_at=now),
            ActiveSession(id="b", user_id="u", refresh_token_id="r2", access_jti="j2",
                          expires_at=now, created_at=now, last_seen_at=now),
            ActiveSession(id="c", user_id="u", refresh_token_id="r3", access_jti="j3",
                          expires_at=now, created_at=now + timedelta(seconds=1), last_seen_at=now),
        ]
        ordered = sorted(sessions, key=lambda s: s.sort_key(), reverse=True)
        assert [s.id for s in ordered] == ["c", "b", "a"]


class TestBulkRevoke:
    async def test_revoke_all_for_user_leaves_others_alone(self, stack, alice, clock):
        bob = stack.auth.create_user("bob", "Correct-Horse-42!")
        await stack.tokens.issue(alice)
        await stack.tokens.issue(alice)
        bobs = await stack.tokens.issue(bob)

        assert await stack.registry.revoke_all_for_user(alice.id, clock()) == 2
        assert stack.registry.list_for_user(alice.id) == []
        assert [s.id for s in stack.registry.list_for_user(bob.id)] == [bobs.session.id]

    async def test_touch_failure_is_swallowed(self, stack, alice, clock, monkeypatch):
        issued = await stack.tokens.issue(alice)

        def broken(session_id, now):
            raise RuntimeError("db hiccup")

        monkeypatch.setattr(stack.store, "touch_session", broken)
        ctx = await stack.tokens.authenticate(issued.access_token)
        assert ctx.session_id == issued.session.id

    async def test_delete_expired(self, stack, alice, clock):
        await stack.tokens.issue(alice)
        assert stack.registry.delete_expired(clock()) == 0
        assert stack.registry.delete_expired(clock() + timedelta(days=8)) == 1
