# cosign_gateway/settings.py
from __future__ import annotations
from pathlib import Path
from functools import lru_cache
from typing import Any, List, Literal, Optional
import os

import yaml
from pydantic import BaseModel, Field, field_validator

# -------------------------
# Pydantic models (typed)
# -------------------------


class SolanaConf(BaseModel):
    url: str = "https://api.devnet.solana.com"
    api_key: Optional[str] = Field(default=None, repr=False)
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    # the RPC client is recreated once it is older than this
    connection_max_age_sec: int = 1800

    def endpoint(self) -> str:
        if not self.api_key:
            return self.url
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}api-key={self.api_key}"


class AdminConf(BaseModel):
    # JSON array of 64 ints, or a base58 secret key. Only ever read from env.
    private_key: Optional[str] = Field(default=None, repr=False)
    # public key that signs authenticating messages; defaults to the admin key
    message_authority: Optional[str] = None


class ProgramsConf(BaseModel):
    reward_system: str = "242r2rA4LJNTdsiMc3DchjgHoeJc3FxaUr71GwsEskJM"
    airdrops: str = "5KK2ThgEp1AZM8bo79ijJcumSqz9B48bszyhYhuw3K7o"
    stake: str = "44op5JkWQ4KjXNphN5jWxFssvz6iAXYKJZnVZgPLXUXq"


class TokensConf(BaseModel):
    reward_mint: str = "4QwHzu44JzCZgFsJzvBCSNvJ3rMTxMC171yoJms618mD"
    decimals: int = 6


class FeesConf(BaseModel):
    priority_fee_sol: float = 0.00001
    network_fee_tokens: float = 20.0
    foundation_wallet: Optional[str] = None
    lost_tokens_amount: float = 5000.0
    minimum_remaining_sol: float = 0.005


class NodeDefaultsConf(BaseModel):
    host_address: str = "8QMK1JHzjydq7qHgTo1RwK3ateLm4zVQF7V7BkriNkeD"
    manufacturer_address: str = "FCap4kWAPMMTvAqUgEX3oFmMmSzg7g3ytxknYD21hpzm"


class IntegrityConf(BaseModel):
    # programs some wallets append on their own; ignored when hashing
    injected_program_ids: List[str] = Field(
        default_factory=lambda: ["L2TExMFKdjpN9kozasaurPirfHy9P8sbXoAN1qA3S95"]
    )


class LedgerConf(BaseModel):
    sqlite_path: str = "cosign.db"
    expiration_window_sec: float = 30.0


class CacheConf(BaseModel):
    simulation_ttl_sec: float = 60.0


class ServerConf(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingConf(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class SocketConf(BaseModel):
    secret: Optional[str] = Field(default=None, repr=False)
    issuer: str = "cosign-explorer"
    audience: str = "cosign-gateway"


class Settings(BaseModel):
    env: Literal["development", "test", "production"] = "development"

    solana: SolanaConf = SolanaConf()
    admin: AdminConf = AdminConf()
    programs: ProgramsConf = ProgramsConf()
    tokens: TokensConf = TokensConf()
    fees: FeesConf = FeesConf()
    node_defaults: NodeDefaultsConf = NodeDefaultsConf()
    integrity: IntegrityConf = IntegrityConf()
    ledger: LedgerConf = LedgerConf()
    cache: CacheConf = CacheConf()
    server: ServerConf = ServerConf()
    logging: LoggingConf = LoggingConf()
    socket: SocketConf = SocketConf()

    # Derived fields (computed in finalize)
    BASE_DIR: Path = Path.cwd()
    DATA_DIR: Path = Path.cwd() / "data"
    SQLITE_PATH: Path = Path.cwd() / "data" / "cosign.db"

    @field_validator("env", mode="before")
    @classmethod
    def _normalize_env(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return {"prod": "production", "dev": "development"}.get(v, v)
        return v

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    def finalize(self) -> "Settings":
        base = Path(os.getenv("COSIGN_BASE_DIR", self.BASE_DIR))
        self.BASE_DIR = base
        data_dir = Path(os.getenv("COSIGN_DATA_DIR", base / "data"))
        if not data_dir.is_absolute():
            data_dir = base / data_dir
        self.DATA_DIR = data_dir

        self.SQLITE_PATH = Path(self.ledger.sqlite_path)
        if not self.SQLITE_PATH.is_absolute():
            self.SQLITE_PATH = self.DATA_DIR / self.SQLITE_PATH

        if self.is_production and not self.admin.private_key:
            raise RuntimeError("COSIGN_ADMIN_PRIVATE_KEY must be set when COSIGN_ENV=production")
        if self.is_production and not self.socket.secret:
            raise RuntimeError("COSIGN_SOCKET_SECRET must be set when COSIGN_ENV=production")
        return self


# -------------------------
# YAML load + env overlay
# -------------------------


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# env var -> (section path, caster)
_ENV_MAP = {
    "COSIGN_ENV": (["env"], str),
    "COSIGN_SOLANA_URL": (["solana", "url"], str),
    "COSIGN_SOLANA_API_KEY": (["solana", "api_key"], str),
    "COSIGN_ADMIN_PRIVATE_KEY": (["admin", "private_key"], str),
    "COSIGN_MESSAGE_AUTHORITY": (["admin", "message_authority"], str),
    "COSIGN_REWARD_SYSTEM_PROGRAM_ID": (["programs", "reward_system"], str),
    "COSIGN_AIRDROPS_PROGRAM_ID": (["programs", "airdrops"], str),
    "COSIGN_STAKE_PROGRAM_ID": (["programs", "stake"], str),
    "COSIGN_REWARD_MINT": (["tokens", "reward_mint"], str),
    "COSIGN_FOUNDATION_WALLET": (["fees", "foundation_wallet"], str),
    "COSIGN_PRIORITY_FEE_SOL": (["fees", "priority_fee_sol"], float),
    "COSIGN_DB_PATH": (["ledger", "sqlite_path"], str),
    "COSIGN_SIMULATION_TTL": (["cache", "simulation_ttl_sec"], float),
    "COSIGN_HOST": (["server", "host"], str),
    "COSIGN_PORT": (["server", "port"], int),
    "COSIGN_LOG_LEVEL": (["logging", "level"], lambda s: s.upper()),
    "COSIGN_SOCKET_SECRET": (["socket", "secret"], str),
}


def _apply_env_overrides(cfg: dict) -> dict:
    def set_in(keys: List[str], value: Any):
        d = cfg
        for k in keys[:-1]:
            d = d.setdefault(k, {})
        d[keys[-1]] = value

    for env_name, (keys, cast) in _ENV_MAP.items():
        raw = os.getenv(env_name)
        if raw:
            set_in(keys, cast(raw))

    # allow comma list for CORS
    cors_env = os.getenv("COSIGN_CORS_ORIGINS")
    if cors_env:
        set_in(["server", "cors_origins"], [x.strip() for x in cors_env.split(",") if x.strip()])

    return cfg


def load_settings(yaml_path: Optional[Path] = None) -> Settings:
    path = yaml_path or Path(os.getenv("COSIGN_CONFIG") or "cosign_config.yaml")
    cfg = _load_yaml(path)
    cfg = _apply_env_overrides(cfg)
    return Settings(**cfg).finalize()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
