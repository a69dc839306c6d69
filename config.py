"""
Transaction Explorer Configuration
Environment-driven settings for the explorer service, ingestion and annotations
"""

import os
from typing import Dict, Any, List

from errors import ConfigurationError


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Base configuration"""

    # Explorer Configuration
    EXPLORER_PORT = int(os.getenv("EXPLORER_PORT", "8082"))
    EXPLORER_HOST = os.getenv("EXPLORER_HOST", "0.0.0.0")
    DEBUG = os.getenv("DEBUG", "false").lower() == "true"

    # Chain registry (slug -> rpc/ws/explorer endpoints)
    CHAINS_FILE = os.getenv(
        "CHAINS_FILE", os.path.join(os.path.dirname(__file__), "chains.json")
    )

    # Server-side explorer proxy; empty means call the explorer in-process
    EXPLORER_PROXY_URL = os.getenv("EXPLORER_PROXY_URL", "")

    # Database Configuration
    DB_PATH = os.getenv("EXPLORER_DB_PATH", "./explorer.db")
    REDIS_URL = os.getenv("REDIS_URL", "")

    # Cache Configuration
    CACHE_TTL_SHORT = int(os.getenv("CACHE_TTL_SHORT", "60"))  # explorer proxy
    CACHE_TTL_MEDIUM = int(os.getenv("CACHE_TTL_MEDIUM", "300"))  # 5 minutes
    CACHE_TTL_LONG = int(os.getenv("CACHE_TTL_LONG", "86400"))  # token metadata

    # Provider Configuration
    RPC_TIMEOUT = int(os.getenv("RPC_TIMEOUT", "15"))
    RPC_RETRY_COUNT = int(os.getenv("RPC_RETRY_COUNT", "2"))

    # Live Ingestion Configuration
    POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "20"))  # seconds
    BLOCK_WINDOW = int(os.getenv("BLOCK_WINDOW", "500"))
    MAX_EVENTS_PER_MINUTE = int(os.getenv("MAX_EVENTS_PER_MINUTE", "100"))
    RATE_LIMIT_RING_SIZE = int(os.getenv("RATE_LIMIT_RING_SIZE", "1"))
    LIVE_BUFFER_SIZE = int(os.getenv("LIVE_BUFFER_SIZE", "50"))
    BACKPRESSURE_PER_LOG = float(os.getenv("BACKPRESSURE_PER_LOG", "0.05"))
    WS_CONNECT_TIMEOUT = float(os.getenv("WS_CONNECT_TIMEOUT", "3"))
    PREFER_STREAMING = os.getenv("PREFER_STREAMING", "true").lower() == "true"

    # Annotation (Nostr) Configuration
    NOSTR_RELAYS = _split(
        os.getenv(
            "NOSTR_RELAYS",
            "wss://relay.damus.io,wss://nos.lol,wss://relay.primal.net",
        )
    )
    NOSTR_KEY_PATH = os.getenv("NOSTR_KEY_PATH", "./nostr.key")
    NOTE_KIND = int(os.getenv("NOTE_KIND", "1111"))
    RELAY_CONNECT_TIMEOUT = float(os.getenv("RELAY_CONNECT_TIMEOUT", "3"))
    RELAY_RECONNECT_DELAY = float(os.getenv("RELAY_RECONNECT_DELAY", "2"))
    RELAY_MAX_RECONNECT_DELAY = float(os.getenv("RELAY_MAX_RECONNECT_DELAY", "60"))

    # API Rate Limiting
    RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
    RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))

    # CORS Configuration
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Logging Configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # WebSocket Configuration
    WS_MAX_CONNECTIONS = int(os.getenv("WS_MAX_CONNECTIONS", "100"))

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            key: value
            for key, value in vars(cls).items()
            if key.isupper() and not callable(value)
        }

    @classmethod
    def get_explorer_api_key(cls, chain: str) -> str:
        """API key for the chain's block explorer, from {CHAIN}_ETHERSCAN_API_KEY"""
        env_name = f"{chain.upper()}_ETHERSCAN_API_KEY"
        api_key = os.getenv(env_name, "")
        if not api_key:
            raise ConfigurationError(
                f"API key not configured. Set {env_name} in the environment."
            )
        return api_key

    @classmethod
    def validate(cls) -> None:
        """Validate configuration"""
        errors = []

        if not cls.CHAINS_FILE:
            errors.append("CHAINS_FILE is required")

        if cls.EXPLORER_PORT < 1 or cls.EXPLORER_PORT > 65535:
            errors.append("EXPLORER_PORT must be between 1 and 65535")

        if cls.MAX_EVENTS_PER_MINUTE < 1:
            errors.append("MAX_EVENTS_PER_MINUTE must be positive")

        if cls.RATE_LIMIT_RING_SIZE < 1:
            errors.append("RATE_LIMIT_RING_SIZE must be positive")

        if cls.BLOCK_WINDOW < 1:
            errors.append("BLOCK_WINDOW must be positive")

        if cls.LIVE_BUFFER_SIZE < 1:
            errors.append("LIVE_BUFFER_SIZE must be positive")

        if errors:
            raise ValueError(f"Configuration validation failed: {', '.join(errors)}")


class DevelopmentConfig(Config):
    """Development configuration"""

    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration"""

    DEBUG = False
    RATE_LIMIT_ENABLED = True
    LOG_LEVEL = "WARNING"


class TestConfig(Config):
    """Test configuration"""

    DB_PATH = ":memory:"
    REDIS_URL = ""
    EXPLORER_PROXY_URL = ""
    NOSTR_RELAYS = ["wss://relay.test"]
    CACHE_TTL_SHORT = 1
    CACHE_TTL_MEDIUM = 1
    CACHE_TTL_LONG = 1
    POLL_INTERVAL = 0.01
    BACKPRESSURE_PER_LOG = 0.0
    RATE_LIMIT_ENABLED = False


# Environment-based configuration selection
ENV_CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "test": TestConfig,
}


def get_config() -> Config:
    """Get configuration based on environment"""
    env = os.getenv("EXPLORER_ENV", "development")
    config_class = ENV_CONFIGS.get(env, DevelopmentConfig)
    config_class.validate()
    return config_class


# Export current configuration
config = get_config()
