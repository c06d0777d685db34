"""
Central configuration for the purchase order panel.

All paths, store locations, timeouts and company settings are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/panel_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from models.order import OrgInfo

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_OUTPUT_DIR     = PROJECT_ROOT / "output"
DEFAULT_CONFIG_DIR     = PROJECT_ROOT / "config"
DEFAULT_DB_PATH        = DEFAULT_OUTPUT_DIR / "panel.db"
DEFAULT_EXPORT_DIR     = DEFAULT_OUTPUT_DIR / "export"

DEFAULT_EXPENSE_TYPES = ("COMPRA", "SERVICIO", "MANTENIMIENTO", "REPUESTOS", "OTROS")


@dataclass
class Config:
    # --- Store backend ---
    store_backend: str = field(
        default_factory=lambda: os.getenv("STORE_BACKEND", "sqlite").lower()
    )
    # store_backend="sqlite" → SQLiteStore on db_path (shared between processes)
    # store_backend="memory" → MemoryStore (single process, lost on exit)

    # --- Locations ---
    output_dir:  Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR)))
    )
    config_dir:  Path = field(
        default_factory=lambda: Path(os.getenv("CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))
    )
    db_path:     Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )
    export_dir:  Path = field(
        default_factory=lambda: Path(os.getenv("EXPORT_DIR", str(DEFAULT_EXPORT_DIR)))
    )

    # --- Store paths (logical schema) ---
    orders_path:   str = "orders"
    users_path:    str = "users"
    counter_path:  str = "metadata/lastOrderNumber"
    counter_seed:  int = 999     # first reserved number is counter_seed + 1

    # --- Timeouts and retries ---
    load_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("LOAD_TIMEOUT", "10"))
    )
    transaction_max_retries:         int   = 25
    transaction_backoff_seconds:     float = 0.01
    transaction_backoff_max_seconds: float = 0.5
    subscription_poll_seconds: float = field(
        default_factory=lambda: float(os.getenv("POLL_INTERVAL", "1.0"))
    )

    # --- Order defaults ---
    default_tax_percent:  float = 19.0
    default_expense_type: str   = "COMPRA"
    expense_types: tuple[str, ...] = DEFAULT_EXPENSE_TYPES

    # --- Dashboard ---
    dashboard_months:    int = 6
    recent_orders_limit: int = 5

    # --- Identity provider throttling ---
    max_failed_sign_ins:     int   = 5
    sign_in_lockout_seconds: float = 300.0

    # --- Buyer (the company issuing every order) ---
    buyer_name:    str = field(default_factory=lambda: os.getenv("BUYER_NAME", "Company S.A.S."))
    buyer_tax_id:  str = field(default_factory=lambda: os.getenv("BUYER_TAX_ID", ""))
    buyer_address: str = field(default_factory=lambda: os.getenv("BUYER_ADDRESS", ""))
    buyer_phone:   str = field(default_factory=lambda: os.getenv("BUYER_PHONE", ""))
    buyer_email:   str = field(default_factory=lambda: os.getenv("BUYER_EMAIL", ""))

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from panel_settings.json if present."""
        settings_file = self.config_dir / "panel_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "load_timeout_seconds":            float,
            "transaction_max_retries":         int,
            "transaction_backoff_seconds":     float,
            "transaction_backoff_max_seconds": float,
            "subscription_poll_seconds":       float,
            "default_tax_percent":             float,
            "default_expense_type":            str,
            "dashboard_months":                int,
            "recent_orders_limit":             int,
            "max_failed_sign_ins":             int,
            "sign_in_lockout_seconds":         float,
            "buyer_name":                      str,
            "buyer_tax_id":                    str,
            "buyer_address":                   str,
            "buyer_phone":                     str,
            "buyer_email":                     str,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
            if isinstance(overrides.get("expense_types"), list):
                self.expense_types = tuple(str(t) for t in overrides["expense_types"])
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load panel_settings.json: %s", exc)

    @property
    def identities_file(self) -> Path:
        return self.config_dir / "identities.json"

    @property
    def buyer(self) -> OrgInfo:
        """The constant company profile stamped on every order as the buyer."""
        return OrgInfo(
            name=self.buyer_name,
            tax_id=self.buyer_tax_id,
            address=self.buyer_address,
            phone=self.buyer_phone,
            email=self.buyer_email,
        )

    def ensure_dirs(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
