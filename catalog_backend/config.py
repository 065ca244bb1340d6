import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_GATEWAYS: Tuple[str, ...] = (
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://gateway.pinata.cloud/ipfs/",
    "https://dweb.link/ipfs/",
)


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime configuration, read once from the environment at startup."""

    opensea_api_key: str = ""
    opensea_api_base: str = "https://api.opensea.io/api/v1"
    port: int = 3001
    csv_path: str = "catalog.csv"
    proxy_base_url: str = "http://localhost:3001"
    ipfs_gateways: List[str] = field(default_factory=lambda: list(DEFAULT_GATEWAYS))
    ipfs_gateway_timeout: float = 5.0
    ipfs_randomize_gateways: bool = False
    image_max_retries: int = 3
    market_image_exempt_contracts: List[str] = field(default_factory=list)
    marketplace_rate_per_minute: int = 8
    log_level: str = "INFO"


def load_settings(env=None) -> Settings:
    env = os.environ if env is None else env
    port = int(env.get("PORT", "3001"))
    api_key = (env.get("OPENSEA_API_KEY") or env.get("REACT_APP_OPENSEA_API_KEY") or "").strip()
    if not api_key:
        # proxy still starts; upstream rejects the calls and they surface as 500s
        logger.warning("OPENSEA_API_KEY is not set")
    return Settings(
        opensea_api_key=api_key,
        opensea_api_base=env.get("OPENSEA_API_BASE", "https://api.opensea.io/api/v1").rstrip("/"),
        port=port,
        csv_path=env.get("CATALOG_CSV_PATH", "catalog.csv"),
        proxy_base_url=env.get("PROXY_BASE_URL", f"http://localhost:{port}").rstrip("/"),
        ipfs_gateways=_split(env.get("IPFS_GATEWAYS")) or list(DEFAULT_GATEWAYS),
        ipfs_gateway_timeout=float(env.get("IPFS_GATEWAY_TIMEOUT", "5")),
        ipfs_randomize_gateways=_flag(env.get("IPFS_RANDOMIZE_GATEWAYS")),
        image_max_retries=int(env.get("IMAGE_MAX_RETRIES", "3")),
        market_image_exempt_contracts=[c.lower() for c in _split(env.get("MARKET_IMAGE_EXEMPT_CONTRACTS"))],
        marketplace_rate_per_minute=int(env.get("MARKETPLACE_RATE_PER_MINUTE", "8")),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
