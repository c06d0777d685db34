"""
Pytest configuration and shared fixtures for the purchase order panel test suite.
"""
import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)

ADMIN_EMAIL = "admin@example.com"
USER_EMAIL = "buyer@example.com"
PASSWORD = "correct-horse-battery"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="panel_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> "Config":
    """Provide a test configuration with isolated directories and an in-memory store."""
    from config import Config

    config = Config()
    # Override paths to use temp directory
    config.output_dir = temp_dir / "output"
    config.config_dir = temp_dir / "config"
    config.export_dir = temp_dir / "output" / "export"
    config.db_path = temp_dir / "output" / "panel.db"
    config.ensure_dirs()

    config.store_backend = "memory"
    config.transaction_backoff_seconds = 0.0
    config.subscription_poll_seconds = 0.05
    config.load_timeout_seconds = 5.0
    config.default_tax_percent = 19.0
    config.buyer_name = "Acme Test S.A.S."
    config.buyer_tax_id = "900.123.456-7"
    return config


@pytest.fixture
def store() -> "MemoryStore":
    """Provide an empty in-memory store that retries without sleeping."""
    from procurement.store import MemoryStore
    return MemoryStore(backoff=0.0)


@pytest.fixture
def identity(test_config) -> "LocalIdentityProvider":
    """Provide an identity provider backed by a temp identities file."""
    from procurement.identity import LocalIdentityProvider
    return LocalIdentityProvider(test_config.identities_file, max_failed_attempts=3)


@pytest.fixture
def password() -> str:
    """The password every test identity is registered with."""
    return PASSWORD


@pytest.fixture
def accounts(identity) -> dict:
    """Register an admin identity and a regular identity (no profiles yet)."""
    return {
        "admin": identity.register(ADMIN_EMAIL, PASSWORD, "Ada Admin"),
        "user": identity.register(USER_EMAIL, PASSWORD, "Bo Buyer"),
    }


@pytest.fixture
def seed_profile(test_config):
    """Return an async helper that writes a profile straight into the store."""
    from models.order import utc_now_iso
    from models.user import UserProfile
    from procurement.store import join_path

    async def _seed(store, user, role="user", active=True, registered_at=None):
        profile = UserProfile(
            uid=user.uid,
            email=user.email,
            display_name=user.display_name,
            role=role,
            active=active,
            registered_at=registered_at or utc_now_iso(),
        )
        await store.set(join_path(test_config.users_path, user.uid), profile.to_document())
        return profile

    return _seed


def _session(uid: str, email: str, role: str):
    from models.user import ResolvedSession, SessionUser, UserProfile
    return ResolvedSession(
        user=SessionUser(uid=uid, email=email, display_name=email.split("@")[0]),
        profile=UserProfile(uid=uid, email=email, role=role, active=True),
        role=role,
    )


@pytest.fixture
def admin_session():
    """A resolved admin session, for services that take a session argument."""
    return _session("uid-admin", ADMIN_EMAIL, "admin")


@pytest.fixture
def user_session():
    """A resolved non-admin session."""
    return _session("uid-user", USER_EMAIL, "user")


@pytest.fixture
def sample_order_document() -> dict:
    """Return an order document as older clients stored it."""
    return {
        "numeroOrden": 1004,
        "fecha": "2026-09-14T15:30:00.000Z",
        "comprador": {"razonSocial": "Acme Test S.A.S.", "nit": "900.123.456-7"},
        "proveedor": {
            "razonSocial": "Ferretería El Tornillo",
            "nit": "800.555.111-2",
            "direccion": "Calle 10 # 20-30",
            "telefono": "601 555 0101",
            "correo": "ventas@tornillo.co",
        },
        "tipoGasto": "REPUESTOS",
        "items": [
            {"numero": 1, "descripcion": "Filtro de aceite", "cantidad": 2, "pUnit": 45000, "total": 90000},
            {"numero": 2, "descripcion": "Pastillas de freno", "cantidad": 1, "pUnit": 120000, "total": 120000},
        ],
        "observaciones": "Entregar en bodega",
        "totales": {
            "subtotal": 210000,
            "ivaPercent": 19,
            "ivaValue": 39900,
            "reteFuente": 5250,
            "reteIca": 0,
            "total": 244650,
        },
        "estado": "ACTIVA",
        "creadoPor": {"uid": "uid-user", "email": USER_EMAIL, "nombre": "Bo Buyer"},
        "ultimaModificacion": "2026-09-14T15:30:00.000Z",
    }


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
