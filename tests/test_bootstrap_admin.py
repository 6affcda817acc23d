from scripts.bootstrap_admin import bootstrap_admin, main
from timekeeper.service.runtime import get_runtime

from conftest import STRONG_PASSWORD


class TestBootstrapAdmin:
    def test_creates_admin(self, reset_runtime_state):
        result = bootstrap_admin("root", STRONG_PASSWORD, "ops@example.com")
        assert result["status"] == "created"
        user = get_runtime().store.get_user(result["user_id"])
        assert user.role == "admin"
        assert get_runtime().passwords.verify_password(user.id, STRONG_PASSWORD)

    def test_promotes_then_reports_no_change(self, reset_runtime_state):
        existing = get_runtime().auth.create_user("ops", STRONG_PASSWORD)
        assert bootstrap_admin("ops", STRONG_PASSWORD)["status"] == "promoted"
        assert get_runtime().store.get_user(existing.id).role == "admin"
        assert bootstrap_admin("ops", STRONG_PASSWORD)["status"] == "already_admin"

    def test_dry_run_changes_nothing(self, reset_runtime_state):
        assert bootstrap_admin("root", STRONG_PASSWORD, dry_run=True)["status"] == "dry_run"
        assert get_runtime().store.get_user_by_username("root") is None

    def test_weak_password_lists_violations(self, reset_runtime_state, capsys):
        assert main(["--username", "root", "--password", "short"]) == 1
        out = capsys.readouterr().out
        assert "password policy" in out
        assert "  - " in out

    def test_username_required(self, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_USERNAME", raising=False)
        assert main(["--password", STRONG_PASSWORD]) == 1
        assert "--username" in capsys.readouterr().out
