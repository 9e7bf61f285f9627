"""
Unit Tests for the Subsystem Facade

Run with:
    pytest tests/unit/test_facade.py -v
"""

import pytest

from core.config import RPCEndpointConfig
from core.errors import (
    AlreadyStartedError,
    ConfigInvalidError,
    NotStartedError,
    UnknownSubsystemError,
    status_code,
)
from services.facade import SubsystemFacade
from services.subsystem import Subsystem


class Dummy(Subsystem):
    name = "database"


@pytest.fixture
def facade():
    return SubsystemFacade(
        {"database": Dummy()},
        remote_control={"http_api": RPCEndpointConfig(enabled=True, listen_address="localhost:9050")},
    )


class TestFacade:
    """Tests for SubsystemFacade"""

    @pytest.mark.asyncio
    async def test_set_toggles_subsystem(self, facade):
        """Verify set starts and stops by name"""
        await facade.set("database", True)
        assert facade.list_subsystems() == {"database": True}

        await facade.set("DATABASE", False)
        assert facade.list_subsystems() == {"database": False}

    @pytest.mark.asyncio
    async def test_lifecycle_errors_pass_through(self, facade):
        """Verify the subsystem's own errors reach the caller unchanged"""
        with pytest.raises(NotStartedError):
            await facade.set("database", False)

        await facade.set("database", True)
        with pytest.raises(AlreadyStartedError) as info:
            await facade.set("database", True)
        assert status_code(info.value) == "already-started"

    @pytest.mark.asyncio
    async def test_unknown_subsystem(self, facade):
        """Verify an unknown name raises UnknownSubsystemError"""
        with pytest.raises(UnknownSubsystemError):
            await facade.set("nonexistent", True)

    @pytest.mark.asyncio
    async def test_enable_runs_validator(self):
        """Verify a failing configuration check blocks enabling"""
        def validator():
            raise ConfigInvalidError("contradiction")

        facade = SubsystemFacade({"database": Dummy()}, validator=validator)
        with pytest.raises(ConfigInvalidError):
            await facade.set("database", True)
        assert not facade.get("database").is_running()

    def test_rejects_unsupported_names(self):
        """Verify only the known subsystem names can be registered"""
        class Other(Subsystem):
            name = "other"

        with pytest.raises(ValueError):
            SubsystemFacade({"other": Other()})

    def test_rpc_endpoints(self, facade):
        """Verify configured endpoints are listed"""
        endpoints = facade.list_rpc_endpoints()
        assert endpoints["http_api"].started is True
        assert endpoints["http_api"].listen_address == "localhost:9050"
