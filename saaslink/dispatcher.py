import logging
from typing import Any, List, Optional

from . import actions
from . import crypto
from . import messages as m
from .filesync import FileSyncError

"""
dispatcher.py — one inbound `todo` envelope in, exactly one reply out.

Checks, in order (first failure wins):
    0. the session is trusted and the envelope opens with our private key
    1. `from` and `to` are present              -> "Some required attributes are missing"
    2. `from` is our session token              -> "Bad user token"
    3. every referenced file syncs              -> sealed {err, data: null}
    4. the action exists (none means "ack")     -> sealed {err: "Unknow action"}
    5. the handler's outcome                    -> sealed {err, data}

Failures before step 3 are answered in plain text as [error, null]; from
step 3 on every answer is a sealed reply [ {appId, token, encrypted} ],
unless the session lost its peer key meanwhile (then there is no reply).
"""

logger = logging.getLogger("saaslink.dispatcher")


class CommandDispatcher:
    def __init__(self, agent) -> None:
        self.agent = agent

    async def dispatch(self, data: Any) -> Optional[List[Any]]:
        """Handle one `todo` payload and return the acknowledgement arguments."""
        session = self.agent.session
        if not session.trusted:
            return m.plain_error(m.NOT_TRUSTED)

        box = data.get("encrypted") if isinstance(data, dict) else None
        try:
            decrypted = crypto.open_sealed(session.private_key, box)
        except ValueError:
            logger.warning("Dropped a command that could not be decrypted.")
            return m.plain_error(m.UNDECRYPTABLE)

        if not m.has_routing(decrypted):
            return m.plain_error(m.MISSING_ATTRIBUTES)

        if session.token is None or decrypted.get("from") != session.token:
            return m.plain_error(m.BAD_TOKEN)

        try:
            envelope = m.parse_envelope(decrypted)
        except m.EnvelopeError as exc:
            return self.reply(m.CommandResult.err(exc), session)

        result = await self.execute(envelope, session)
        return self.reply(result, session)

    async def execute(self, envelope: m.Envelope, session) -> m.CommandResult:
        """Files first, then the handler. Never raises for command-scoped errors."""
        if envelope.has_files:
            try:
                await self.agent.pipeline.sync_all(envelope.files, session.token)
            except FileSyncError as exc:
                logger.warning("File sync failed, skipping action: %s", exc)
                return m.CommandResult.err(exc)

        if envelope.action is None:
            return m.CommandResult.ok(True)

        handler = actions.resolve(envelope.action)
        if handler is None:
            return m.CommandResult.err(m.UNKNOWN_ACTION)

        try:
            value = await handler(self.agent, envelope.payload)
        except (actions.ActionError, OSError) as exc:
            logger.warning("Action %s failed: %s", envelope.action, exc)
            return m.CommandResult.err(exc)
        except Exception as exc:
            # Host callables can raise anything; the peer still gets its reply.
            logger.exception("Action %s raised unexpectedly", envelope.action)
            return m.CommandResult.err(exc)

        logger.info("Action %s done.", envelope.action)
        return m.CommandResult.ok(value)

    def reply(self, result: m.CommandResult, session) -> Optional[List[Any]]:
        # The connection may have dropped while we worked; nobody to answer then.
        if session.peer_key is None:
            logger.info("Session closed before the reply was sent; dropping it.")
            return None
        return [m.build_reply(result, self.agent.config.app_id, session.token, session.peer_key)]
