"""
Client configuration.

Values come from the environment; a .env file in the working directory is
loaded first.
"""

import os
import logging
from dataclasses import dataclass
from dotenv import load_dotenv


DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_DATA_DIR = "client_data"


@dataclass
class Settings:
    """
    Attributes:
        api_url: Base URL of the relay (directory and inbox API)
        data_dir: Directory for the encrypted local database
        http_timeout: Seconds before an HTTP request to the relay fails
        log_level: Root log level name
    """
    api_url: str = DEFAULT_API_URL
    data_dir: str = DEFAULT_DATA_DIR
    http_timeout: float = 10.0
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            api_url=os.getenv("CHAT_API_URL", DEFAULT_API_URL).rstrip("/"),
            data_dir=os.getenv("CHAT_DATA_DIR", DEFAULT_DATA_DIR),
            http_timeout=float(os.getenv("CHAT_HTTP_TIMEOUT", "10")),
            log_level=os.getenv("CHAT_LOG_LEVEL", "WARNING").upper(),
        )

    def configure_logging(self):
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
