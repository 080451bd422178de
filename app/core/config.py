# app/core/config.py
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Settlement Gateway"
    API_V1_STR: str = "/api/v1"

    # Where the JSON documents (requests, policy, failures, ledger) live
    X402_DATA_DIR: str = "data"

    # Settlement defaults
    X402_SETTLEMENT_TOKEN: str = "0x0fF5393387ad2f9f691FD6Fd28e07E3969e27e63"
    X402_MERCHANT_ADDRESS: str = "0x6D705b93F0Da7DC26e46cB39Decc3baA4fb4dd29"
    X402_PRICE: str = "0.05"
    X402_REACTIVE_PRICE: str = "0.03"
    X402_REACTIVE_RECIPIENT: str = "0xEd335560178B85f0524FfFf3372e9Bf45aB42aC8"

    # Challenge shape
    X402_REQUEST_TTL_SECONDS: int = 600
    X402_PROTOCOL_VERSION: str = "0.1-demo"
    X402_SCHEME: str = "kite-aa-erc20"
    X402_NETWORK: str = "kite_testnet"
    X402_TOKEN_DECIMALS: int = 18

    # Spending policy defaults, used whenever the stored document lacks a valid value
    X402_POLICY_MAX_PER_TX: float = 0.20
    X402_POLICY_DAILY_LIMIT: float = 0.60
    X402_POLICY_ALLOWED_RECIPIENTS: str = ""  # comma-separated; empty means the merchant and reactive agent
    X402_POLICY_FAILURE_LOG_MAX: int = 300

    # Listing endpoints
    X402_QUERY_LIMIT_DEFAULT: int = 50
    X402_QUERY_LIMIT_MAX: int = 200

    # Remote transfer indexer. Local records.json is used when unset.
    X402_LEDGER_API_URL: Optional[AnyHttpUrl] = None
    X402_LEDGER_API_TIMEOUT: int = 10

    # Honors debugForceExpire / simulateInsufficientFunds request flags
    X402_DEBUG_FLAGS_ENABLED: bool = True

    # Static agent identity stamped on new requests
    X402_IDENTITY_REGISTRY: str = ""
    X402_AGENT_ID: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    def default_allowed_recipients(self) -> List[str]:
        """Allowed recipients from config, lowercased, falling back to the catalog recipients."""
        raw = self.X402_POLICY_ALLOWED_RECIPIENTS or f"{self.X402_MERCHANT_ADDRESS},{self.X402_REACTIVE_RECIPIENT}"
        return [item.strip().lower() for item in raw.split(",") if item.strip()]

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
