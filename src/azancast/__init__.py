"""Live audio broadcast with session-key authorization.

A broadcaster publishes microphone audio under a sticky session key; listeners
authorized with that key join automatically when the broadcast starts.
"""

from src.azancast.auth import AuthorizationManager, generate_session_key
from src.azancast.config import AppConfig
from src.azancast.controller import SessionController
from src.azancast.factory import AzancastClient
from src.azancast.keystore import KeyStore
from src.azancast.models import (
    CallState,
    Role,
    SessionSnapshot,
    SessionState,
    StatusCondition,
)
from src.azancast.notifier import SessionNotifier
from src.azancast.orchestrator import CallOrchestrator

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "AuthorizationManager",
    "AzancastClient",
    "CallOrchestrator",
    "CallState",
    "KeyStore",
    "Role",
    "SessionController",
    "SessionNotifier",
    "SessionSnapshot",
    "SessionState",
    "StatusCondition",
    "generate_session_key",
]
