"""Browser-driven messaging account automation."""
from .bridge import Bridge
from .config import Settings, get_settings
from .errors import (
    AccountBlockedError,
    BridgeError,
    BridgeNotReadyError,
    EmptyResultError,
    EvaluationError,
    InjectError,
    MediaTooLargeError,
    NotLoggedInError,
    PuppetBusyError,
    PuppetError,
    PuppetStateError,
    SessionError,
    SessionTimeoutError,
    UploadError,
    WatchdogResetError,
)
from .logging_config import configure_logging
from .media_uploader import MediaPayload, MediaUploadPlan, plan_upload, upload_media
from .profile import Profile
from .puppet import Puppet
from .puppet_web import PuppetWeb
from .state import CallResult, EventType, LifecycleState, Liveness, PuppetEvent, ScanInfo, WatchdogFood
from .watchdog import Watchdog, WatchdogReset

__version__ = "0.1.0"

__all__ = [
    "AccountBlockedError",
    "Bridge",
    "BridgeError",
    "BridgeNotReadyError",
    "CallResult",
    "EmptyResultError",
    "EvaluationError",
    "EventType",
    "InjectError",
    "LifecycleState",
    "Liveness",
    "MediaPayload",
    "MediaTooLargeError",
    "MediaUploadPlan",
    "NotLoggedInError",
    "Profile",
    "Puppet",
    "PuppetBusyError",
    "PuppetError",
    "PuppetEvent",
    "PuppetStateError",
    "PuppetWeb",
    "ScanInfo",
    "SessionError",
    "SessionTimeoutError",
    "Settings",
    "UploadError",
    "Watchdog",
    "WatchdogFood",
    "WatchdogReset",
    "WatchdogResetError",
    "configure_logging",
    "get_settings",
    "plan_upload",
    "upload_media",
]
