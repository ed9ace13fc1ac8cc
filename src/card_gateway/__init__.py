"""Session-gated gateway between browsers and the Webex messaging API."""

from .config import GatewayConfig, load_config_from_env
from .http_transport import create_app
from .ledger import ActivityLedger, ActivityRecord
from .oauth import CredentialExchanger, is_allowed
from .server import main
from .sessions import Credential, Identity, Session, SessionStore

__all__ = [
    "ActivityLedger",
    "ActivityRecord",
    "Credential",
    "CredentialExchanger",
    "GatewayConfig",
    "Identity",
    "Session",
    "SessionStore",
    "create_app",
    "is_allowed",
    "load_config_from_env",
    "main",
]
