from .logger import setup_logging, get_logger, scanner_logger, api_logger, platform_logger, alert_logger
from .retry import RetryConfig, with_retry, MARKET_DATA_RETRY
from .secrets import encrypt_secret, decrypt_secret

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "scanner_logger",
    "api_logger",
    "platform_logger",
    "alert_logger",

    # Retry
    "RetryConfig",
    "with_retry",
    "MARKET_DATA_RETRY",

    # Secrets
    "encrypt_secret",
    "decrypt_secret",
]
