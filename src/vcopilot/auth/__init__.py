from vcopilot.auth.device_flow import DeviceFlow
from vcopilot.auth.manager import AuthStatus, CredentialManager
from vcopilot.auth.resolver import CredentialResolver
from vcopilot.auth.session import SessionExchanger
from vcopilot.auth.store import CredentialStore

__all__ = [
    "AuthStatus",
    "CredentialManager",
    "CredentialResolver",
    "CredentialStore",
    "DeviceFlow",
    "SessionExchanger",
]
