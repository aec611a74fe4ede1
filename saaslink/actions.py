import asyncio
import contextlib
import enum
import inspect
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from .filesync import gather_strict, remove_path

"""
actions.py — the closed set of remote-invocable operations.

Each handler is `async def handler(agent, payload) -> value`; it raises
ActionError (or lets an OSError escape) to report failure. The dispatcher
looks handlers up through `resolve()`; names outside the Action enum are
never callable.
"""

logger = logging.getLogger("saaslink.actions")


class ActionError(RuntimeError):
    """A handler refused or failed the command; the text goes back to the peer."""


class Action(str, enum.Enum):
    HANDLE_CONFIG = "handleConfig"
    PULL_SERVER = "pullServer"
    REBUILD = "rebuild"
    REMOVE_FILE_OR_FOLDER = "removeFileOrFolder"
    RENAME_FILE_OR_FOLDER = "renameFileOrFolder"


class Host:
    """
    What the embedding application server exposes to the agent.

    Subclass (or pass callables) to wire in the real server; the defaults
    are inert so the agent can run standalone.
    """
    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        models: Optional[Dict[str, Any]] = None,
        api: Optional[Dict[str, Any]] = None,
        rebuild: Optional[Callable[[], Any]] = None,
        on_config_change: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> None:
        self.config = config
        self.models = models if models is not None else {}
        self.api = api if api is not None else {}
        self._rebuild = rebuild
        self._on_config_change = on_config_change

    def rebuild(self) -> Any:
        if self._rebuild is None:
            logger.warning("Rebuild requested but the host exposes no rebuild capability.")
            return None
        return self._rebuild()

    def config_changed(self, payload: Dict[str, Any]) -> Any:
        if self._on_config_change is not None:
            return self._on_config_change(payload)
        return None


# -------------
# Handlers
# -------------

async def handle_config(agent, payload: Dict[str, Any]) -> bool:
    """No filesystem work here; the host decides how to flush and reinstall."""
    logger.warning("We need to flush server.")
    logger.warning("Install dependencies if we have to.")
    result = agent.host.config_changed(payload)
    if inspect.isawaitable(result):
        await result
    return True


async def pull_server(agent, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Full snapshot of the host's state; the channel is trusted with all of it."""
    host = agent.host
    return {
        "token": agent.session.token,
        "config": host.config if host.config is not None else agent.config.to_public_dict(),
        "models": host.models,
        "api": host.api,
        "templates": {},
    }


async def rebuild(agent, payload: Dict[str, Any]) -> bool:
    """Fire and forget: success means the host's rebuild was started."""
    result = agent.host.rebuild()
    if inspect.isawaitable(result):
        agent.spawn(result)
    return True


async def remove_file_or_folder(agent, payload: Dict[str, Any]) -> bool:
    entries = payload.get("toRemove")
    if not isinstance(entries, list):
        raise ActionError("Attribute `toRemove` is missing or is not an array")

    async def remove_one(entry: Any) -> None:
        raw = entry.get("path") if isinstance(entry, dict) else None
        if not isinstance(raw, str) or not raw:
            raise ActionError("Each `toRemove` entry needs a `path`")
        path = Path(raw)
        async with agent.locks.lock(path):
            if not await asyncio.to_thread(os.path.lexists, path):
                raise ActionError(f"Unknow path '{raw}'")
            await asyncio.to_thread(remove_path, path)

    await gather_strict(remove_one(entry) for entry in entries)
    return True


def copy_path(old: Path, new: Path) -> None:
    """Copy a file or a whole tree; existing files at `new` are overwritten."""
    if old.is_dir() and not old.is_symlink():
        shutil.copytree(old, new, dirs_exist_ok=True, symlinks=True)
    else:
        new.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(old, new, follow_symlinks=False)


async def rename_file_or_folder(agent, payload: Dict[str, Any]) -> bool:
    """
    Copy old -> new, then remove old.

    If the copy succeeds and the removal fails, both copies stay on disk and
    the batch reports failure; nothing is rolled back.
    """
    entries = payload.get("toRename")
    if not isinstance(entries, list):
        raise ActionError("Attribute `toRename` is missing or is not an array")

    async def rename_one(entry: Any) -> None:
        if not isinstance(entry, dict):
            raise ActionError("Each `toRename` entry needs `oldPath` and `newPath`")
        old_raw, new_raw = entry.get("oldPath"), entry.get("newPath")
        if not isinstance(old_raw, str) or not isinstance(new_raw, str) or not old_raw or not new_raw:
            raise ActionError("Each `toRename` entry needs `oldPath` and `newPath`")
        old, new = Path(old_raw), Path(new_raw)

        async with contextlib.AsyncExitStack() as stack:
            # Fixed order so two renames over the same pair can't deadlock.
            for key in sorted({str(old.resolve()), str(new.resolve())}):
                await stack.enter_async_context(agent.locks.lock(key))

            if not await asyncio.to_thread(os.path.lexists, old):
                raise ActionError(f"Unknow path '{old_raw}'")
            if old.resolve() == new.resolve():
                return
            await asyncio.to_thread(copy_path, old, new)
            await asyncio.to_thread(remove_path, old)

    await gather_strict(rename_one(entry) for entry in entries)
    return True


Handler = Callable[[Any, Dict[str, Any]], Awaitable[Any]]

HANDLERS: Dict[Action, Handler] = {
    Action.HANDLE_CONFIG: handle_config,
    Action.PULL_SERVER: pull_server,
    Action.REBUILD: rebuild,
    Action.REMOVE_FILE_OR_FOLDER: remove_file_or_folder,
    Action.RENAME_FILE_OR_FOLDER: rename_file_or_folder,
}


def resolve(name: Any) -> Optional[Handler]:
    """Handler for an action name, or None if it isn't one of ours."""
    try:
        return HANDLERS[Action(name)]
    except ValueError:
        return None
