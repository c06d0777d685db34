"""
Unit tests for user administration.
"""
import asyncio

import pytest

from models.user import SessionUser
from procurement.errors import NotFound, PermissionDenied
from procurement.store import join_path
from procurement.user_admin import UserAdministration


@pytest.fixture
def admin(store, test_config):
    return UserAdministration(store, test_config.users_path)


@pytest.fixture
def people():
    return [
        SessionUser(uid="uid-admin", email="admin@example.com", display_name="Ada"),
        SessionUser(uid="u1", email="one@example.com", display_name="One"),
        SessionUser(uid="u2", email="two@example.com", display_name="Two"),
    ]


@pytest.fixture
def seeded(store, seed_profile, people):
    async def _seed():
        await seed_profile(store, people[0], role="admin", registered_at="2026-01-01T00:00:00Z")
        await seed_profile(store, people[1], registered_at="2026-03-01T00:00:00Z")
        await seed_profile(store, people[2], active=False, registered_at="2026-02-01T00:00:00Z")
    return _seed


@pytest.mark.unit
class TestUserAdministration:
    """Tests for UserAdministration class."""

    def test_list_sorted_by_registration_desc(self, admin, seeded, admin_session):
        """Test newest registrations come first."""
        async def scenario():
            await seeded()
            return await admin.list_profiles(admin_session)

        profiles = asyncio.run(scenario())
        assert [p.uid for p in profiles] == ["u1", "u2", "uid-admin"]

    def test_list_requires_admin(self, admin, user_session):
        """Test a non-admin cannot list profiles."""
        with pytest.raises(PermissionDenied):
            asyncio.run(admin.list_profiles(user_session))

    def test_counts(self, admin, seeded, admin_session):
        """Test total, active and admin counts."""
        async def scenario():
            await seeded()
            return admin.counts(await admin.list_profiles(admin_session))

        counts = asyncio.run(scenario())
        assert (counts.total, counts.active, counts.admins) == (3, 2, 1)

    def test_manageable_excludes_self(self, admin, seeded, admin_session):
        """Test the signed-in admin is not offered their own row."""
        async def scenario():
            await seeded()
            return admin.manageable(await admin.list_profiles(admin_session), admin_session)

        assert {p.uid for p in asyncio.run(scenario())} == {"u1", "u2"}

    def test_change_role_stamps_audit_fields(self, admin, seeded, store, test_config, admin_session):
        """Test a role change records who changed it and when."""
        async def scenario():
            await seeded()
            changed = await admin.change_role(admin_session, "u1", "admin")
            return changed, await store.get(join_path(test_config.users_path, "u1"))

        changed, document = asyncio.run(scenario())
        assert changed is True
        assert document["rol"] == "admin"
        assert document["modificadoPor"] == "uid-admin"
        assert document["fechaModificacion"]
        assert document["email"] == "one@example.com"

    def test_change_role_rejects_unknown_role(self, admin, admin_session):
        """Test only known roles may be assigned."""
        with pytest.raises(ValueError):
            asyncio.run(admin.change_role(admin_session, "u1", "root"))

    def test_cannot_change_own_role(self, admin, seeded, admin_session):
        """Test an admin cannot demote themselves."""
        async def scenario():
            await seeded()
            await admin.change_role(admin_session, "uid-admin", "user")

        with pytest.raises(PermissionDenied):
            asyncio.run(scenario())

    def test_declined_confirmation_writes_nothing(self, admin, seeded, store, test_config, admin_session):
        """Test a refused confirmation leaves the profile untouched."""
        async def scenario():
            await seeded()
            changed = await admin.set_active(admin_session, "u1", False, confirm=lambda _p: False)
            return changed, await store.get(join_path(test_config.users_path, "u1"))

        changed, document = asyncio.run(scenario())
        assert changed is False
        assert document["activo"] is True
        assert "modificadoPor" not in document

    def test_set_active(self, admin, seeded, store, test_config, admin_session):
        """Test reactivating an inactive user."""
        async def scenario():
            await seeded()
            await admin.set_active(admin_session, "u2", True)
            return await store.get(join_path(test_config.users_path, "u2", "activo"))

        assert asyncio.run(scenario()) is True

    def test_toggle_requires_admin(self, admin, seeded, user_session):
        """Test a non-admin cannot deactivate anyone."""
        async def scenario():
            await seeded()
            await admin.set_active(user_session, "u1", False)

        with pytest.raises(PermissionDenied):
            asyncio.run(scenario())

    def test_toggle_missing_user(self, admin, admin_session):
        """Test toggling an unknown uid raises NotFound."""
        with pytest.raises(NotFound):
            asyncio.run(admin.set_active(admin_session, "ghost", False))

    def test_first_admin_can_bootstrap(self, admin, people):
        """Test the first admin profile can be created without a session."""
        async def scenario():
            return await admin.create_profile(None, people[0], role="admin"), await admin.has_admin()

        profile, has_admin = asyncio.run(scenario())
        assert profile.role == "admin"
        assert profile.active is True
        assert has_admin is True

    def test_bootstrap_closes_once_an_admin_exists(self, admin, seeded, people):
        """Test without a session nobody can be registered after the first admin."""
        async def scenario():
            await seeded()
            await admin.create_profile(None, SessionUser(uid="u9", email="x@example.com"), role="admin")

        with pytest.raises(PermissionDenied):
            asyncio.run(scenario())

    def test_admin_registers_user(self, admin, seeded, admin_session):
        """Test an admin can register a regular profile with a department."""
        async def scenario():
            await seeded()
            return await admin.create_profile(
                admin_session, SessionUser(uid="u9", email="nine@example.com"), department="Taller"
            )

        profile = asyncio.run(scenario())
        assert profile.role == "user"
        assert profile.department == "Taller"
