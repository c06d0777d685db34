"""
Integration tests for the command line interface.
"""
import pytest
from click.testing import CliRunner

from main import cli

ADMIN = ["--email", "boss@example.com", "--password", "boss-pass"]


@pytest.fixture
def runner(temp_dir, monkeypatch):
    """A CliRunner whose Config points at a fresh SQLite store in temp_dir."""
    monkeypatch.setenv("STORE_BACKEND", "sqlite")
    monkeypatch.setenv("OUTPUT_DIR", str(temp_dir / "output"))
    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    monkeypatch.setenv("DB_PATH", str(temp_dir / "output" / "panel.db"))
    monkeypatch.setenv("EXPORT_DIR", str(temp_dir / "output" / "export"))
    monkeypatch.delenv("PANEL_EMAIL", raising=False)
    monkeypatch.delenv("PANEL_PASSWORD", raising=False)
    return CliRunner()


@pytest.fixture
def bootstrapped(runner):
    assert runner.invoke(cli, ["init"]).exit_code == 0
    result = runner.invoke(cli, [
        "users", "add", "boss@example.com", "--new-password", "boss-pass", "--role", "admin", "--name", "Boss",
    ])
    assert result.exit_code == 0, result.output
    return runner


@pytest.mark.integration
class TestCli:
    """End-to-end runs of the click commands against one store file."""

    def test_first_admin_bootstrap(self, bootstrapped):
        """Test the first admin registers without signing in."""
        result = bootstrapped.invoke(cli, ["users", "list", *ADMIN])
        assert result.exit_code == 0, result.output
        assert "boss@example.com" in result.output
        assert "1 users" in result.output

    def test_second_user_needs_admin_credentials(self, bootstrapped):
        """Test registration is closed without a session once an admin exists."""
        result = bootstrapped.invoke(cli, ["users", "add", "two@example.com", "--new-password", "x"])
        assert result.exit_code != 0
        result = bootstrapped.invoke(cli, ["users", "add", "two@example.com", "--new-password", "x", *ADMIN])
        assert result.exit_code == 0, result.output
        assert "as user" in result.output

    def test_create_list_and_export(self, bootstrapped, temp_dir):
        """Test an order created from the CLI is listed, counted and exported."""
        result = bootstrapped.invoke(cli, [
            "orders", "create", "--supplier", "ACME Ltda", "--item", "Bolts:10:2500",
            "--item", "Nuts: M8:4:1000", "--type", "REPUESTOS", *ADMIN,
        ])
        assert result.exit_code == 0, result.output
        assert "Created order #1000" in result.output

        listed = bootstrapped.invoke(cli, ["orders", "list", "--search", "acme", *ADMIN])
        assert "ACME Ltda" in listed.output
        assert "1 orders" in listed.output

        stats = bootstrapped.invoke(cli, ["dashboard", *ADMIN])
        assert "REPUESTOS" in stats.output

        destination = temp_dir / "orders.csv"
        exported = bootstrapped.invoke(cli, ["export", str(destination), *ADMIN])
        assert exported.exit_code == 0, exported.output
        assert destination.exists()

    def test_invalid_item_is_rejected(self, bootstrapped):
        """Test a malformed --item fails before anything is saved."""
        result = bootstrapped.invoke(cli, ["orders", "create", "--supplier", "X", "--item", "junk", *ADMIN])
        assert result.exit_code != 0
        listed = bootstrapped.invoke(cli, ["orders", "list", *ADMIN])
        assert "No orders found." in listed.output

    def test_wrong_password_fails(self, bootstrapped):
        """Test a failed sign-in exits non-zero."""
        result = bootstrapped.invoke(cli, ["dashboard", "--email", "boss@example.com", "--password", "nope"])
        assert result.exit_code == 1

    def test_empty_export_fails(self, bootstrapped, temp_dir):
        """Test exporting with no orders exits non-zero and writes nothing."""
        destination = temp_dir / "empty.csv"
        result = bootstrapped.invoke(cli, ["export", str(destination), *ADMIN])
        assert result.exit_code == 1
        assert not destination.exists()
