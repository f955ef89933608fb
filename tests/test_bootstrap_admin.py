import pytest

from authbase.service.runtime import get_runtime
from scripts.bootstrap_admin import (
    ADMIN_PERMISSIONS,
    ADMIN_ROLE,
    bootstrap_admin,
    ensure_admin_role,
    validate_password,
)

PASSWORD = "Adm1n-Password!"


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Adm1n-Password!", True),
        ("alllowercase123", False),
        ("Short1!", False),
        ("NoDigitsButLong!", True),
    ],
)
def test_validate_password(password, ok):
    assert validate_password(password) is ok


class TestBootstrapAdmin:
    async def test_creates_admin(self):
        runtime = get_runtime()

        result = await bootstrap_admin("Root@Example.com", PASSWORD, runtime=runtime)

        assert result["status"] == "created"
        principal = runtime.store.get_principal(result["principal_id"])
        assert principal.email == "root@example.com"
        assert principal.role_names == [ADMIN_ROLE]
        assert runtime.sessions.has_permission(principal.id, "security:audit:read")
        assert runtime.hasher.verify(principal.password_hash, PASSWORD)

    async def test_idempotent(self):
        runtime = get_runtime()
        await bootstrap_admin("root@example.com", PASSWORD, runtime=runtime)

        again = await bootstrap_admin("root@example.com", PASSWORD, runtime=runtime)

        assert again["status"] == "already_admin"

    async def test_existing_admin_gets_missing_permissions(self):
        runtime = get_runtime()
        runtime.store.create_role(ADMIN_ROLE, "partial", ["user:read"])
        runtime.store.create_principal(
            "root@example.com", runtime.hasher.hash(PASSWORD), roles=[ADMIN_ROLE]
        )

        result = await bootstrap_admin("root@example.com", PASSWORD, runtime=runtime)

        assert result["status"] == "already_admin"
        assert runtime.store.get_role(ADMIN_ROLE).permission_names == set(ADMIN_PERMISSIONS)

    async def test_dry_run_leaves_existing_admin_role_alone(self):
        runtime = get_runtime()
        runtime.store.create_role(ADMIN_ROLE, "partial", ["user:read"])
        runtime.store.create_principal(
            "root@example.com", runtime.hasher.hash(PASSWORD), roles=[ADMIN_ROLE]
        )

        result = await bootstrap_admin("root@example.com", PASSWORD, dry_run=True, runtime=runtime)

        assert result["status"] == "already_admin"
        assert runtime.store.get_role(ADMIN_ROLE).permission_names == {"user:read"}

    async def test_promotes_existing_principal(self):
        runtime = get_runtime()
        existing = runtime.store.create_principal("bob@example.com", runtime.hasher.hash(PASSWORD))

        result = await bootstrap_admin("bob@example.com", PASSWORD, runtime=runtime)

        assert result == {"principal_id": existing.id, "email": "bob@example.com", "status": "promoted"}
        assert runtime.store.get_principal(existing.id).role_names == [ADMIN_ROLE]

    async def test_dry_run_changes_nothing(self):
        runtime = get_runtime()

        result = await bootstrap_admin("root@example.com", PASSWORD, dry_run=True, runtime=runtime)

        assert result["status"] == "dry_run"
        assert runtime.store.get_principal_by_email("root@example.com") is None
        assert runtime.store.get_role(ADMIN_ROLE) is None


def test_ensure_admin_role_backfills_permissions(memory_store):
    memory_store.create_role(ADMIN_ROLE, "partial", ["user:read"])

    ensure_admin_role(memory_store)

    assert memory_store.get_role(ADMIN_ROLE).permission_names == set(ADMIN_PERMISSIONS)
