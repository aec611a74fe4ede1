import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional

import httpx

from .actions import Host
from .config import AgentConfig, load_credentials
from .connection import ConnectionManager, ReconnectPolicy
from .dispatcher import CommandDispatcher
from .filesync import FileSyncPipeline, PathLocks
from .handshake import HandshakeProtocol, Session

"""
agent.py — the one object every component is handed.

Built once at startup from the config and the host; owns the live Session
(replaced on each connect), the file sync pipeline, the dispatcher and the
connection manager.
"""

logger = logging.getLogger("saaslink.agent")


class Agent:
    def __init__(
        self,
        config: AgentConfig,
        host: Optional[Host] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        home: Optional[Path] = None,
        policy: Optional[ReconnectPolicy] = None,
    ) -> None:
        self.config = config
        self.host = host or Host()
        self.home = home
        self.session = Session()
        self.locks = PathLocks()
        self.pipeline = FileSyncPipeline(config, http_client=http_client, locks=self.locks)
        self.handshake = HandshakeProtocol(config)
        self.dispatcher = CommandDispatcher(self)
        self.connection = ConnectionManager(self, policy=policy)
        self._background: set = set()

    def load_token(self) -> Optional[str]:
        """Session token from the credential file (None when absent)."""
        return load_credentials(self.home)

    def spawn(self, aw: Awaitable[Any]) -> asyncio.Future:
        """Run host work in the background; failures are logged, not raised."""
        task = asyncio.ensure_future(aw)
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background host task failed: %s", task.exception())

    async def run(self) -> None:
        if not self.config.is_active:
            logger.info("SaaS connection disabled (no url configured or enabled=false).")
            return
        await self.connection.run()

    async def stop(self) -> None:
        await self.connection.stop()
