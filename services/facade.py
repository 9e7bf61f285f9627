"""
Subsystem Facade

The single entry point the outside world (HTTP API, CLI) uses to inspect
and toggle subsystems. It dispatches by name to the subsystem instance and
returns lifecycle errors unchanged.

Subsystem names form a closed set:
    communications, internet_monitor, orders, portfolio, ntp_timekeeper,
    database, exchange_syncer, dispatch, gctscript
"""

from typing import Callable, Dict, Optional

from core.config import RPCEndpointConfig
from core.errors import UnknownSubsystemError
from core.logging import get_logger
from core.schemas import RPCEndpoint, SubsystemStatus
from services.subsystem import Subsystem

logger = get_logger(__name__)

SUBSYSTEM_NAMES = (
    "communications",
    "internet_monitor",
    "orders",
    "portfolio",
    "ntp_timekeeper",
    "database",
    "exchange_syncer",
    "dispatch",
    "gctscript",
)


class SubsystemFacade:
    """
    Name-based lifecycle control over a fixed set of subsystems.

    Example:
        >>> await facade.set("ntp_timekeeper", True)
        >>> facade.list_subsystems()["ntp_timekeeper"]
        True
        >>> await facade.set("ntp_timekeeper", True)   # raises AlreadyStartedError
    """

    def __init__(
        self,
        subsystems: Dict[str, Subsystem],
        remote_control: Optional[Dict[str, RPCEndpointConfig]] = None,
        validator: Optional[Callable[[], None]] = None,
    ) -> None:
        unknown = set(subsystems) - set(SUBSYSTEM_NAMES)
        if unknown:
            raise ValueError(f"unsupported subsystem names: {sorted(unknown)}")
        self._subsystems = dict(subsystems)
        self._remote_control = dict(remote_control or {})
        self._validator = validator

    def get(self, name: str) -> Subsystem:
        """
        Raises:
            UnknownSubsystemError: If no subsystem has that name
        """
        subsystem = self._subsystems.get(name.lower())
        if subsystem is None:
            raise UnknownSubsystemError(name)
        return subsystem

    def list_subsystems(self) -> Dict[str, bool]:
        return {name: sub.is_running() for name, sub in self._subsystems.items()}

    def statuses(self) -> Dict[str, SubsystemStatus]:
        return {name: sub.status() for name, sub in self._subsystems.items()}

    async def set(self, name: str, enable: bool) -> None:
        """
        Start or stop a subsystem by name.

        Raises:
            UnknownSubsystemError: If no subsystem has that name
            ConfigInvalidError: If enabling and the configuration is contradictory
            AlreadyStartedError / NotStartedError / StartFailedError / StopFailedError:
                Straight from the subsystem
        """
        subsystem = self.get(name)
        if enable:
            if self._validator is not None:
                self._validator()
            await subsystem.start()
        else:
            await subsystem.stop()
        logger.info(f"Subsystem {name} {'enabled' if enable else 'disabled'}")

    def list_rpc_endpoints(self) -> Dict[str, RPCEndpoint]:
        return {
            name: RPCEndpoint(started=endpoint.enabled, listen_address=endpoint.listen_address)
            for name, endpoint in self._remote_control.items()
        }
