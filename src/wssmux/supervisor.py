"""Port forwarding supervisor.

The supervisor derives the forwarder set from the stored configuration and
keeps exactly one forwarder per non-excluded port. Reconfiguration is always
a full teardown followed by a rebuild, never an incremental patch.
"""

import asyncio
import signal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .config import ConfigStore, TunnelConfig
from .forwarder import Forwarder, ForwarderState
from .logging import get_logger

logger = get_logger(__name__)


class ForwarderSpec(BaseModel):
    """Where one forwarder listens and what it connects to."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(..., ge=1, le=65535)
    target_host: str
    target_port: int = Field(..., ge=1, le=65535)

    @property
    def target(self) -> str:
        return f"{self.target_host}:{self.target_port}"


class ForwardPlan(BaseModel):
    """Forwarder set derived from one configuration."""

    specs: list[ForwarderSpec] = Field(default_factory=list)
    excluded: list[int] = Field(default_factory=list)

    @property
    def ports(self) -> list[int]:
        return [spec.port for spec in self.specs]


class ReconcileResult(BaseModel):
    """Outcome of one reconcile pass."""

    active: list[int] = Field(default_factory=list)
    excluded: list[int] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)
    revision: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


def plan(config: TunnelConfig) -> ForwardPlan:
    """Derive the forwarder set for a configuration.

    Forwarding is symmetric: every forwarder connects to the same port number
    it listens on, on the role's target host.
    """
    target_host = config.target_host
    specs: list[ForwarderSpec] = []
    excluded: list[int] = []

    for port in config.ports:
        if port == config.excluded_port:
            excluded.append(port)
            continue
        specs.append(ForwarderSpec(port=port, target_host=target_host, target_port=port))

    return ForwardPlan(specs=specs, excluded=excluded)


class PortForwardSupervisor:
    """Runs and supervises one forwarder per configured port."""

    def __init__(
        self,
        store: ConfigStore,
        listen_host: str = "0.0.0.0",  # nosec B104
        idle_timeout: float | None = None,
    ):
        """Initialize the supervisor.

        Args:
            store: Configuration store to read the port set from
            listen_host: Address every forwarder binds to
            idle_timeout: Optional idle timeout passed to every forwarder
        """
        self.store = store
        self.listen_host = listen_host
        self.idle_timeout = idle_timeout

        self._forwarders: dict[int, Forwarder] = {}
        self._reconcile_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._stop_requested = False
        self._reload_requested = False

    @property
    def forwarders(self) -> dict[int, Forwarder]:
        return dict(self._forwarders)

    @property
    def listening_ports(self) -> list[int]:
        return [
            port
            for port, forwarder in self._forwarders.items()
            if forwarder.state == ForwarderState.LISTENING
        ]

    async def reconcile(self, config: TunnelConfig | None = None) -> ReconcileResult:
        """Tear down every forwarder and rebuild the set from ``config``.

        Args:
            config: Configuration to apply; loaded from the store when None

        Returns:
            Active, excluded and failed ports of the new forwarder set
        """
        async with self._reconcile_lock:
            if config is None:
                config = self.store.load()

            forward_plan = plan(config)
            if config.is_edge:
                logger.info("Edge server: forwarding to upstream server", target=config.target_host)
            else:
                logger.info("Upstream server: forwarding to local services")

            await self._stop_all()

            result = ReconcileResult(excluded=forward_plan.excluded, revision=config.revision)
            for port in forward_plan.excluded:
                logger.info("Excluding panel port from tunneling", port=port)

            if not forward_plan.specs:
                logger.warning("No ports to forward", ports=config.ports)

            for spec in forward_plan.specs:
                forwarder = Forwarder(
                    spec.port,
                    spec.target_host,
                    target_port=spec.target_port,
                    listen_host=self.listen_host,
                    idle_timeout=self.idle_timeout,
                )
                self._forwarders[spec.port] = forwarder
                if await forwarder.start():
                    result.active.append(spec.port)
                else:
                    result.failed[spec.port] = forwarder.error or "bind failed"

            if result.failed:
                logger.error(
                    "Some ports could not be forwarded",
                    failed=sorted(result.failed),
                    active=result.active,
                )
            logger.info("All tunnels configured. Waiting for connections...", active=result.active)
            return result

    async def stop(self) -> None:
        """Stop every forwarder."""
        async with self._reconcile_lock:
            await self._stop_all()

    async def _stop_all(self) -> None:
        if not self._forwarders:
            return
        forwarders = list(self._forwarders.values())
        self._forwarders.clear()
        await asyncio.gather(*(forwarder.stop() for forwarder in forwarders))
        logger.info("Forwarders stopped", ports=[forwarder.port for forwarder in forwarders])

    def get_status(self) -> dict[str, Any]:
        return {
            "listen_host": self.listen_host,
            "forwarders": [forwarder.get_info() for forwarder in self._forwarders.values()],
        }

    def request_stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    def request_reload(self) -> None:
        self._reload_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> int:
        """Service entry point: reconcile, then serve until signalled.

        SIGTERM and SIGINT stop the forwarders and return; SIGHUP re-reads the
        store and reconciles again.

        Returns:
            Process exit status; non-zero when no forwarder could be started
        """
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._stop_requested = False

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)
        loop.add_signal_handler(signal.SIGHUP, self.request_reload)

        try:
            result = await self.reconcile()
            if result.failed and not result.active:
                logger.error("No forwarder could be started")
                return 1

            while True:
                await self._stop_event.wait()
                self._stop_event.clear()
                if self._stop_requested or not self._reload_requested:
                    break
                self._reload_requested = False
                logger.info("Reload requested, reconciling forwarders")
                await self.reconcile()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
                loop.remove_signal_handler(sig)
            await self.stop()
            logger.info("Supervisor stopped")

        return 0
