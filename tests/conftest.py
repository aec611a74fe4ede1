"""Shared test fixtures for saaslink."""

from __future__ import annotations

import io
import json
import struct
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
import pytest

from saaslink import crypto
from saaslink.actions import Host
from saaslink.agent import Agent
from saaslink.config import AgentConfig
from saaslink.handshake import SessionState

SESSION_TOKEN = "user-token-T"


@pytest.fixture(scope="session")
def peer_keys():
    """The control plane's keypair (generated once, RSA-2048 is slow)."""
    return crypto.generate_keypair()


@pytest.fixture(scope="session")
def agent_keys():
    """A keypair to install into agent sessions without running keygen."""
    return crypto.generate_keypair()


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    root.mkdir()
    return root


@pytest.fixture
def config(app_root: Path) -> AgentConfig:
    return AgentConfig(
        url="http://saas.test",
        secret_key="s3cret",
        app_id="app-1",
        name="demo-app",
        environment="development",
        app_root=app_root,
    )


def make_zip(files: Dict[str, str]) -> bytes:
    """In-memory zip archive from {member: text}."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buf.getvalue()


def with_compression_method(archive: bytes, method: int) -> bytes:
    """Rewrite the compression method of a single-member zip to `method`."""
    raw = bytearray(archive)
    for signature, offset in ((b"PK\x03\x04", 8), (b"PK\x01\x02", 10)):
        struct.pack_into("<H", raw, raw.find(signature) + offset, method)
    return bytes(raw)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def trusted_agent(config: AgentConfig, agent_keys, peer_keys, tmp_path: Path):
    """Factory for an Agent whose session already completed the handshake."""

    def build(
        host: Optional[Host] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token: Optional[str] = SESSION_TOKEN,
    ) -> Agent:
        agent = Agent(config, host=host, http_client=http_client, home=tmp_path)
        session = agent.session
        session.private_key, session.public_key = agent_keys
        session.peer_key = peer_keys[1]
        session.token = token
        session.state = SessionState.TRUSTED
        return agent

    return build


def seal_command(agent: Agent, data: Dict[str, Any]) -> Dict[str, Any]:
    """What the control plane sends on `todo`."""
    return {"appId": agent.config.app_id, "encrypted": crypto.seal(agent.session.public_key, data)}


def open_reply(args, peer_keys) -> Dict[str, Any]:
    """Unseal a dispatcher reply the way the control plane would."""
    assert isinstance(args, list) and len(args) == 1
    reply = args[0]
    assert reply["appId"] == "app-1"
    return crypto.open_sealed(peer_keys[0], reply["encrypted"])


def write_credentials(home: Path, token: str = SESSION_TOKEN) -> None:
    (home / ".saaslinkrc").write_text(json.dumps({"token": token}), encoding="utf-8")
