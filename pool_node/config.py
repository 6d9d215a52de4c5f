from dataclasses import dataclass
import os
from urllib.parse import urlsplit
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass
class Settings:
    # Initialize with defaults, environment is read in __post_init__
    rpcurl: str = "http://127.0.0.1"
    rpcport: int = 8332
    rpcuser: str = ""
    rpcpass: str = ""
    rpc_timeout: float = 10.0  # seconds
    zmq_endpoint: str = ""
    poll_interval: float = 1.0  # seconds, poll mode only
    process_id: str = ""
    log_level: str = "INFO"
    verbose: bool = False  # Deprecated: use log_level instead
    # Template coordination
    template_lock_ttl: float = 60.0
    template_fetch_give_up: float = 600.0  # 0 = retry forever
    template_wait_give_up: float = 600.0  # 0 = wait forever
    template_retry_max_delay: float = 2.0
    template_keep_heights: int = 100
    # Mining state
    mining_info_retries: int = 5
    mining_info_retry_interval: float = 0.1
    mining_info_stale_after: int = 3
    # Persistence
    enable_database: bool = False
    database_path: str = "data/templates.db"
    # Status API
    enable_api: bool = False
    api_port: int = 8080

    def __post_init__(self):
        """Load settings from environment variables at instance creation time"""
        self.rpcurl = os.getenv("BITCOIN_RPC_URL", self.rpcurl)
        self.rpcport = _env_int("BITCOIN_RPC_PORT", self.rpcport)
        self.rpcuser = os.getenv("BITCOIN_RPC_USER", self.rpcuser)
        self.rpcpass = os.getenv("BITCOIN_RPC_PASSWORD", self.rpcpass)
        # Timeouts are configured in milliseconds, kept in seconds
        self.rpc_timeout = _env_float("BITCOIN_RPC_TIMEOUT", self.rpc_timeout * 1000) / 1000
        self.zmq_endpoint = os.getenv("BITCOIN_ZMQ_HOST", self.zmq_endpoint)
        self.poll_interval = (
            _env_float("BITCOIN_POLL_MINING_INFO_TIMEOUT", self.poll_interval * 1000)
            / 1000
        )
        if self.poll_interval <= 0:
            self.poll_interval = 1.0

        # PM2 style process managers export NODE_APP_INSTANCE per worker
        self.process_id = os.getenv(
            "PROCESS_ID", os.getenv("NODE_APP_INSTANCE", self.process_id)
        )

        # Log level configuration (LOG_LEVEL takes precedence over VERBOSE)
        log_level_env = os.getenv("LOG_LEVEL", "").upper()
        if log_level_env:
            self.log_level = log_level_env
        else:
            self.verbose = os.getenv("VERBOSE", "false").lower() == "true"
            self.log_level = "DEBUG" if self.verbose else "INFO"

        self.template_lock_ttl = _env_float("TEMPLATE_LOCK_TTL", self.template_lock_ttl)
        self.template_fetch_give_up = _env_float(
            "TEMPLATE_FETCH_GIVE_UP", self.template_fetch_give_up
        )
        self.template_wait_give_up = _env_float(
            "TEMPLATE_WAIT_GIVE_UP", self.template_wait_give_up
        )
        self.template_retry_max_delay = _env_float(
            "TEMPLATE_RETRY_MAX_DELAY", self.template_retry_max_delay
        )
        self.template_keep_heights = _env_int(
            "TEMPLATE_KEEP_HEIGHTS", self.template_keep_heights
        )
        self.mining_info_stale_after = _env_int(
            "MINING_INFO_STALE_AFTER", self.mining_info_stale_after
        )
        if self.mining_info_stale_after < 1:
            self.mining_info_stale_after = 1

        self.enable_database = os.getenv("ENABLE_DATABASE", "false").lower() == "true"
        self.database_path = os.getenv("DATABASE_PATH", self.database_path)
        self.enable_api = os.getenv("ENABLE_API", "false").lower() == "true"
        self.api_port = _env_int("API_PORT", self.api_port)

    @property
    def push_mode(self) -> bool:
        return bool(self.zmq_endpoint)

    @property
    def node_url(self) -> str:
        parts = urlsplit(self.rpcurl if "://" in self.rpcurl else f"http://{self.rpcurl}")
        scheme = parts.scheme or "http"
        host = parts.hostname or "127.0.0.1"
        if self.rpcuser or self.rpcpass:
            return f"{scheme}://{self.rpcuser}:{self.rpcpass}@{host}:{self.rpcport}"
        return f"{scheme}://{host}:{self.rpcport}"
