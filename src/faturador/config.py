from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "faturador-nfse"
KEYRING_SERVICE = "faturador-nfse"
KEYRING_USERNAME = "nfeio-api-key"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (env var set in the
    shell, dev layout). Returns None if only platformdirs would resolve and
    that directory does not exist yet.
    """
    from_env = os.environ.get("FATURADOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/faturador/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FATURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FATURADOR_DATA_DIR", "data", kind="data")


ENVIRONMENTS = ("homologacao", "producao")

ENDPOINTS = {
    "homologacao": {
        "nfeio": "https://api.nfe.io",
        "legal_entity": "https://legalentity.api.nfe.io",
    },
    "producao": {
        "nfeio": "https://api.nfe.io",
        "legal_entity": "https://legalentity.api.nfe.io",
    },
}

VIACEP_URL = "https://viacep.com.br/ws"
IBGE_URL = "https://servicodados.ibge.gov.br/api/v1/localidades"

NFEIO_TIMEOUT = 30
LOOKUP_TIMEOUT = 10
REPOLL_DELAY = 2.0

PROVIDER_NAME = "NFe.io"

_PLACEHOLDER_KEYS = frozenset({"", "your_nfeio_api_key_here"})


# --- Keyring helpers ---


def _get_keyring_api_key() -> str | None:
    """Try to get the NFe.io API key from the OS keyring.

    Returns None on any failure (keyring not installed, no backend, not stored).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_api_key(api_key: str) -> bool:
    """Store the NFe.io API key in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, api_key)
        return True
    except Exception:
        return False


def get_api_key() -> str:
    """Return the NFe.io API key.

    Priority: 1) NFEIO_API_KEY env var, 2) OS keyring.
    Raises KeyError if neither source has a usable key.
    """
    key = os.environ.get("NFEIO_API_KEY")
    if key is not None and key.strip() not in _PLACEHOLDER_KEYS:
        return key.strip()
    key = _get_keyring_api_key()
    if key:
        return key
    raise KeyError("NFEIO_API_KEY")


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text()) or {}


def load_file_settings() -> dict:
    """Load config/faturador.yaml, or an empty dict when it does not exist."""
    path = get_config_dir() / "faturador.yaml"
    if not path.is_file():
        return {}
    return load_yaml(path)


@dataclass(frozen=True)
class Settings:
    """Runtime settings assembled from faturador.yaml and the environment."""

    database_url: str
    api_key: str | None
    env: str = "homologacao"
    nfeio_url: str = ENDPOINTS["homologacao"]["nfeio"]
    legal_entity_url: str = ENDPOINTS["homologacao"]["legal_entity"]
    webhook_secret: str | None = None
    nfeio_timeout: float = NFEIO_TIMEOUT
    lookup_timeout: float = LOOKUP_TIMEOUT
    repoll_delay: float = REPOLL_DELAY
    db_min_connections: int = 1
    db_max_connections: int = 10

    @property
    def is_sandbox(self) -> bool:
        """True when emitting against the provider's test environment."""
        url = self.nfeio_url.lower()
        return self.env == "homologacao" or "sandbox" in url or "test" in url


def load_settings() -> Settings:
    """Build Settings. Environment variables override faturador.yaml values."""
    file_cfg = load_file_settings()
    env = os.environ.get("FATURADOR_ENV") or str(file_cfg.get("env", "homologacao"))
    if env not in ENVIRONMENTS:
        raise ValueError(f"Ambiente inválido: '{env}'. Use {' ou '.join(ENVIRONMENTS)}.")

    database_url = os.environ.get("DATABASE_URL") or file_cfg.get("database_url")
    if not database_url:
        raise KeyError("DATABASE_URL")

    try:
        api_key: str | None = get_api_key()
    except KeyError:
        api_key = None

    nfeio = file_cfg.get("nfeio", {}) or {}
    db = file_cfg.get("database", {}) or {}
    return Settings(
        database_url=database_url,
        api_key=api_key,
        env=env,
        nfeio_url=os.environ.get("NFEIO_API_URL") or nfeio.get("url", ENDPOINTS[env]["nfeio"]),
        legal_entity_url=os.environ.get("NFEIO_LEGALENTITY_API_URL")
        or nfeio.get("legal_entity_url", ENDPOINTS[env]["legal_entity"]),
        webhook_secret=os.environ.get("NFEIO_WEBHOOK_SECRET") or nfeio.get("webhook_secret"),
        nfeio_timeout=float(nfeio.get("timeout", NFEIO_TIMEOUT)),
        lookup_timeout=float(file_cfg.get("lookup_timeout", LOOKUP_TIMEOUT)),
        repoll_delay=float(nfeio.get("repoll_delay", REPOLL_DELAY)),
        db_min_connections=int(db.get("min_connections", 1)),
        db_max_connections=int(db.get("max_connections", 10)),
    )


def get_lock_dir() -> Path:
    """Return the directory holding per-invoice lock files."""
    return get_data_dir() / "locks"
