"""
config.py
----------
Central configuration for the identity verifier server.
This file holds defaults, paths, and the startup configuration structure.

Includes:
- HTTPS setup (certificate, key)
- Verifier identity (audience, callback host)
- External collaborators (key directory, schema gateway, state contract)
- Session store settings
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ===============================
# Server & TLS Configuration
# ===============================
HOST = "127.0.0.1"
PORT = 8001
CERT_FILE = os.path.join(BASE_DIR, "server.crt")
KEY_FILE = os.path.join(BASE_DIR, "server.key")
STATIC_DIR = "static"

# ===============================
# Verifier Identity
# ===============================
HOST_URL = "https://26d2-103-6-33-21.in.ngrok.io"
CALLBACK_PATH = "/api/callback"
AUDIENCE = "1125GJqgw6YEsKFwj63GY87MMxPL9kwDKxPUiwMLNZ"
SIGNING_KEY_FILE = "signing.key"  # relative to the working directory

# ===============================
# Proof Requirement
# ===============================
CIRCUIT_ID = "credentialAtomicQuerySig"
SCHEMA_TYPE = "CountryCodeVerifier1"
SCHEMA_URL = (
    "https://s3.eu-west-1.amazonaws.com/polygonid-schemas/"
    "75f22464-3c3f-4f2a-9691-10cb27d83e84.json-ld"
)
COUNTRY_CODE = 84

# ===============================
# External Collaborators
# ===============================
KEYS_DIR = "../keys"
IPFS_GATEWAY = "ipfs.io"
RPC_URL = "https://matic-mumbai.chainstacklabs.com"
STATE_CONTRACT = "0x46Fd04eEa588a3EA7e9F055dd691C688c4148ab3"
HTTP_TIMEOUT = 10  # seconds

# ===============================
# Session Settings
# ===============================
SESSION_ID = "1"
SESSION_TTL = 300  # seconds
DB_PATH = ""  # empty -> in-memory store


@dataclass(frozen=True)
class ServerConfig:
    """Everything the server needs at startup, resolved once."""

    host: str = HOST
    port: int = PORT
    host_url: str = HOST_URL
    audience: str = AUDIENCE
    session_id: Optional[str] = SESSION_ID
    session_ttl: int = SESSION_TTL
    keys_dir: str = KEYS_DIR
    ipfs_gateway: str = IPFS_GATEWAY
    rpc_url: str = RPC_URL
    contract_address: str = STATE_CONTRACT
    schema_url: str = SCHEMA_URL
    schema_type: str = SCHEMA_TYPE
    country_code: int = COUNTRY_CODE
    db_path: str = DB_PATH
    signing_key_file: str = SIGNING_KEY_FILE
    static_dir: str = STATIC_DIR
    cert_file: str = CERT_FILE
    key_file: str = KEY_FILE
    http_timeout: float = HTTP_TIMEOUT

    @property
    def callback_url(self) -> str:
        return f"{self.host_url.rstrip('/')}{CALLBACK_PATH}"

    @property
    def tls_enabled(self) -> bool:
        return os.path.exists(self.cert_file) and os.path.exists(self.key_file)


def _env_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def load_config(env=None) -> ServerConfig:
    """
    Builds a ServerConfig from ZKID_* environment variables.
    Anything unset falls back to the module defaults above.
    An empty ZKID_SESSION_ID switches to a random session id per request.
    """
    env = os.environ if env is None else env

    def get(name, default):
        return env.get(name, default)

    def env_int(name, default):
        return _env_int(env, name, default)

    session_id = get("ZKID_SESSION_ID", SESSION_ID)

    return ServerConfig(
        host=get("ZKID_HOST", HOST),
        port=env_int("ZKID_PORT", PORT),
        host_url=get("ZKID_HOST_URL", HOST_URL),
        audience=get("ZKID_AUDIENCE", AUDIENCE),
        session_id=session_id or None,
        session_ttl=env_int("ZKID_SESSION_TTL", SESSION_TTL),
        keys_dir=get("ZKID_KEYS_DIR", KEYS_DIR),
        ipfs_gateway=get("ZKID_IPFS_GATEWAY", IPFS_GATEWAY),
        rpc_url=get("ZKID_RPC_URL", RPC_URL),
        contract_address=get("ZKID_STATE_CONTRACT", STATE_CONTRACT),
        schema_url=get("ZKID_SCHEMA_URL", SCHEMA_URL),
        schema_type=get("ZKID_SCHEMA_TYPE", SCHEMA_TYPE),
        country_code=env_int("ZKID_COUNTRY_CODE", COUNTRY_CODE),
        db_path=get("ZKID_DB_PATH", DB_PATH),
        signing_key_file=get("ZKID_SIGNING_KEY", SIGNING_KEY_FILE),
        static_dir=get("ZKID_STATIC_DIR", STATIC_DIR),
        cert_file=get("ZKID_CERT_FILE", CERT_FILE),
        key_file=get("ZKID_KEY_FILE", KEY_FILE),
        http_timeout=env_int("ZKID_HTTP_TIMEOUT", HTTP_TIMEOUT),
    )
