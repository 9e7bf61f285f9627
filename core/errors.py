"""
Error Taxonomy

Every failure raised by the runtime core belongs to one of a small number of
categories. The category decides what a caller may do with it:

    config-invalid      - malformed configuration; fatal at startup
    unknown-*           - lookup miss (subsystem, venue, instrument, order)
    already-started     - lifecycle contract violation (informational)
    not-started         - lifecycle contract violation (informational)
    policy-violation    - order rejected by local policy, never retried
    transient           - network timeout / 5xx / disconnect, retried
    permanent           - venue 4xx, auth failure, surfaced immediately
    capacity-exhausted  - pool full or queue closed
    integrity           - orderbook invariant broken, state is reset
    fatal-internal      - dispatcher stopped while in use, corruption

Usage:
    from core.errors import PolicyViolationError, is_transient

    try:
        await manager.submit("binance", request)
    except PolicyViolationError as e:
        logger.warning(f"Rejected locally: {e}")
"""

import asyncio
from typing import List, Optional

import aiohttp


class VenueHubError(Exception):
    """Base class for all runtime core errors."""

    category: str = "fatal-internal"


# ============================================
# Configuration
# ============================================

class ConfigInvalidError(VenueHubError, ValueError):
    category = "config-invalid"


# ============================================
# Lookup misses
# ============================================

class UnknownSubsystemError(VenueHubError, LookupError):
    category = "unknown-subsystem"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"subsystem '{name}' not found")


class UnknownVenueError(VenueHubError, LookupError):
    category = "unknown-venue"

    def __init__(self, name: str, reason: str = "not loaded"):
        self.name = name
        super().__init__(f"exchange '{name}' {reason}")


class UnknownInstrumentError(VenueHubError, LookupError):
    category = "unknown-instrument"


class ExchangeAlreadyLoadedError(VenueHubError, ValueError):
    category = "config-invalid"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"exchange '{name}' already loaded")


# ============================================
# Lifecycle
# ============================================

class AlreadyStartedError(VenueHubError):
    category = "already-started"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} already started")


class NotStartedError(VenueHubError):
    category = "not-started"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} not started")


class StartFailedError(VenueHubError):
    category = "start-failed"

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"{name} failed to start: {reason}")


class StopFailedError(VenueHubError):
    category = "stop-failed"

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"{name} failed to stop: {reason}")


# ============================================
# Orders and venues
# ============================================

class PolicyViolationError(VenueHubError):
    category = "policy-violation"

    def __init__(self, rule: str, detail: str):
        self.rule = rule
        self.detail = detail
        super().__init__(f"order violates {rule}: {detail}")


class TransientError(VenueHubError):
    category = "transient"


class PermanentError(VenueHubError):
    category = "permanent"

    def __init__(self, message: str, venue_message: Optional[str] = None):
        self.venue_message = venue_message
        if venue_message:
            message = f"{message}: {venue_message}"
        super().__init__(message)


class UnknownOrderError(PermanentError, LookupError):
    def __init__(self, venue: str, order_id: str):
        self.venue = venue
        self.order_id = order_id
        super().__init__(f"order '{order_id}' not found for {venue}")


class CapabilityNotSupportedError(VenueHubError):
    category = "permanent"

    def __init__(self, venue: str, feature: str):
        self.venue = venue
        self.feature = feature
        super().__init__(f"{venue} does not support {feature}")


# ============================================
# Capacity, integrity and internals
# ============================================

class CapacityExhaustedError(VenueHubError):
    category = "capacity-exhausted"


class PipeClosedError(CapacityExhaustedError):
    def __init__(self):
        super().__init__("subscription pipe released")


class IntegrityError(VenueHubError):
    category = "integrity"


class FatalInternalError(VenueHubError):
    category = "fatal-internal"


class DispatcherNotRunningError(FatalInternalError):
    def __init__(self):
        super().__init__("dispatcher not running")


# ============================================
# Scripting
# ============================================

class ScriptingDisabledError(VenueHubError):
    category = "config-invalid"

    def __init__(self):
        super().__init__("scripting is disabled")


class InvalidScriptPathError(PermanentError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path}: invalid file path")


class UnknownVMError(PermanentError, LookupError):
    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"virtual machine '{vm_id}' not found")


class ScriptValidationError(PermanentError):
    def __init__(self, failed_files: List[str]):
        self.failed_files = failed_files
        super().__init__("script failed validation", ", ".join(failed_files))


# ============================================
# Helpers
# ============================================

def is_transient(exc: BaseException) -> bool:
    """
    Decide whether an error may be retried under a retry budget.

    Network timeouts, connection failures and 5xx responses are transient;
    anything the venue rejected on its merits is not.
    """
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, VenueHubError):
        return False
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status >= 500
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError,
                        aiohttp.ServerTimeoutError, ConnectionError, TimeoutError)):
        return True
    return False


def status_code(exc: Optional[BaseException]) -> str:
    """
    Map an error returned by the subsystem control surface to its status string.

    Example:
        >>> status_code(None)
        'ok'
        >>> status_code(StartFailedError("database", "database support disabled"))
        'start-failed(database support disabled)'
    """
    if exc is None:
        return "ok"
    if isinstance(exc, (StartFailedError, StopFailedError)):
        return f"{exc.category}({exc.reason})"
    if isinstance(exc, VenueHubError):
        return exc.category
    return f"error({exc})"
