# app/core/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Micropayment Engine"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str = "sqlite:///./x402.db"

    # Payment gateway
    X402_ENABLED: bool = True
    X402_NETWORK: str = "mainnet-beta"
    X402_RECIPIENT_ADDRESS: str = "FbRDjtZRRtLmjok6NvzsxSey4gDAoTmr8RacPiaRZEWX"
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Settlement ledger (Solana JSON-RPC), comma-separated, tried in order
    SOLANA_RPC_ENDPOINTS: str = "https://api.mainnet-beta.solana.com"
    HELIUS_API_KEY: Optional[str] = None
    X402_RPC_TIMEOUT_SECONDS: float = 10.0

    # Price oracle
    PYTH_SOL_USD_FEED: str = "H6ARHf6YXhGYeQfUzQNGk6rDNnLBQKrenN712K4AQJEG"
    X402_PRICE_CACHE_TTL_SECONDS: float = 30.0
    X402_FALLBACK_SOL_USD_RATE: float = 150.0
    X402_PRICE_MIN_PLAUSIBLE: float = 0.0
    X402_PRICE_MAX_PLAUSIBLE: float = 10000.0

    # Submission and confirmation
    X402_ESTIMATED_FEE_LAMPORTS: int = 5000
    X402_CONFIRMATION_POLL_INTERVAL_SECONDS: float = 5.0
    X402_CONFIRMATION_TIMEOUT_SECONDS: float = 300.0
    X402_MONITOR_WORKERS: int = 4
    X402_PENDING_GRACE_SECONDS: float = 60.0

    # Sessions and proofs
    X402_SESSION_DEFAULT_HOURS: int = 24
    X402_PROOF_TOLERANCE_PERCENT: float = 2.0
    X402_SIGNATURE_MAX_AGE_SECONDS: int = 300

    # Periodic maintenance: expire sessions, roll up yesterday's usage
    X402_MAINTENANCE_ENABLED: bool = True
    X402_MAINTENANCE_INTERVAL_SECONDS: float = 3600.0

    # JSON file listing metered services and their routes (optional)
    X402_SERVICE_CATALOG_PATH: Optional[str] = None

    # Base58 secret of a server-held agent wallet (optional)
    X402_AGENT_WALLET_SECRET: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    def rpc_endpoints(self) -> List[str]:
        """Ordered RPC endpoint list, Helius first when a key is configured."""
        endpoints = []
        if self.HELIUS_API_KEY:
            endpoints.append(f"https://mainnet.helius-rpc.com/?api-key={self.HELIUS_API_KEY}")
        for item in self.SOLANA_RPC_ENDPOINTS.split(","):
            item = item.strip()
            if item and item not in endpoints:
                endpoints.append(item)
        return endpoints

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
