"""Tests for the event channel, reconnect policy and the full connection lifecycle."""

from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path

import pytest

from conftest import SESSION_TOKEN, open_reply, write_credentials
from saaslink import crypto
from saaslink import messages as m
from saaslink.agent import Agent
from saaslink.connection import ConnectionManager, EventChannel, ReconnectPolicy
from saaslink.framing import (
    LENGTH_STRUCT,
    MAX_FRAME_SIZE,
    ack_frame,
    event_frame,
    read_frame,
    write_frame,
)
from saaslink.handshake import Session


class FakeWriter:
    """StreamWriter stand-in that records bytes and close() calls."""

    def __init__(self) -> None:
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def frames(self) -> list:
        out, view = [], bytes(self.data)
        while view:
            (length,) = LENGTH_STRUCT.unpack(view[:LENGTH_STRUCT.size])
            end = LENGTH_STRUCT.size + length
            out.append(json.loads(view[LENGTH_STRUCT.size:end]))
            view = view[end:]
        return out


class ResettingWriter(FakeWriter):
    """A writer whose peer has already reset the connection."""

    def write(self, data: bytes) -> None:
        raise ConnectionResetError("peer reset")


def encode(frame) -> bytes:
    payload = json.dumps(frame).encode("utf-8")
    return LENGTH_STRUCT.pack(len(payload)) + payload


async def until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestReconnectPolicy:
    def test_exponential_then_capped(self) -> None:
        policy = ReconnectPolicy(randomization=0)
        assert [policy.backoff(n) for n in range(1, 6)] == [2.0, 4.0, 5.0, 5.0, 5.0]

    def test_jitter_stays_in_bounds(self) -> None:
        policy = ReconnectPolicy()
        for attempt in range(1, 8):
            for _ in range(50):
                assert 2.0 <= policy.backoff(attempt) <= 5.0

    def test_five_attempts(self) -> None:
        policy = ReconnectPolicy()
        assert not policy.exhausted(5)
        assert policy.exhausted(6)


class TestEventChannel:
    """Event/ack protocol over a fed StreamReader."""

    @pytest.mark.asyncio
    async def test_call_resolves_with_ack_args(self) -> None:
        reader, writer = asyncio.StreamReader(), FakeWriter()
        channel = EventChannel(reader, writer)
        runner = asyncio.create_task(channel.run())

        call = asyncio.create_task(channel.call("getPublicKey"))
        await until(lambda: writer.frames())
        sent = writer.frames()[0]
        assert sent["event"] == "getPublicKey"

        reader.feed_data(encode(ack_frame(sent["id"], ["PEM"])))
        assert await asyncio.wait_for(call, 5) == ["PEM"]

        reader.feed_eof()
        await asyncio.wait_for(runner, 5)

    @pytest.mark.asyncio
    async def test_pending_call_fails_on_eof(self) -> None:
        reader, writer = asyncio.StreamReader(), FakeWriter()
        channel = EventChannel(reader, writer)
        runner = asyncio.create_task(channel.run())

        call = asyncio.create_task(channel.call("getPublicKey"))
        await until(lambda: writer.frames())
        reader.feed_eof()

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(call, 5)
        await runner
        assert channel.closed

    @pytest.mark.asyncio
    async def test_event_with_id_gets_acknowledged(self) -> None:
        reader, writer = asyncio.StreamReader(), FakeWriter()
        channel = EventChannel(reader, writer)

        async def ping(data):
            return ["pong", data]

        async def silent(data):
            return None

        channel.on("ping", ping)
        channel.on("silent", silent)
        runner = asyncio.create_task(channel.run())

        reader.feed_data(encode(event_frame("silent", 1, 4)))
        reader.feed_data(encode(event_frame("unknown", 1, 6)))
        reader.feed_data(encode(event_frame("ping", 2, 5)))
        await until(lambda: writer.frames())

        assert writer.frames() == [{"type": "ack", "id": 5, "args": ["pong", 2]}]
        reader.feed_eof()
        await runner

    @pytest.mark.asyncio
    async def test_oversized_reply_is_answered_with_short_error(self) -> None:
        reader, writer = asyncio.StreamReader(), FakeWriter()
        channel = EventChannel(reader, writer)

        async def huge(data):
            return ["x" * MAX_FRAME_SIZE]

        channel.on("pullServer", huge)
        runner = asyncio.create_task(channel.run())

        reader.feed_data(encode(event_frame("pullServer", None, 9)))
        await until(lambda: writer.frames())

        assert writer.frames() == [{"type": "ack", "id": 9, "args": [m.REPLY_TOO_LARGE, None]}]
        reader.feed_eof()
        await runner

    @pytest.mark.asyncio
    async def test_malformed_frame_ends_run(self) -> None:
        reader, writer = asyncio.StreamReader(), FakeWriter()
        channel = EventChannel(reader, writer)
        reader.feed_data(LENGTH_STRUCT.pack(3) + b"{x}")
        with pytest.raises(ValueError):
            await channel.run()


class TestConnectionManager:
    """Retry loop and lifecycle notifications."""

    def test_unknown_lifecycle_event(self, config, tmp_path: Path) -> None:
        manager = ConnectionManager(Agent(config, home=tmp_path))
        with pytest.raises(ValueError):
            manager.add_listener("exploded", lambda: None)

    @pytest.mark.asyncio
    async def test_gives_up_after_five_retries(self, config, tmp_path: Path, caplog) -> None:
        opens = []

        async def refuse():
            opens.append(1)
            raise ConnectionRefusedError("nobody home")

        manager = ConnectionManager(
            Agent(config, home=tmp_path),
            policy=ReconnectPolicy(delay=0, delay_max=0, randomization=0),
            opener=refuse,
        )
        gave_up, errors = [], []
        manager.add_listener("reconnect_failed", lambda: gave_up.append(1))
        manager.add_listener("transport_error", errors.append)

        with caplog.at_level("INFO", logger="saaslink.connection"):
            await asyncio.wait_for(manager.run(), 5)

        assert len(opens) == 6
        assert gave_up == [1]
        assert len(errors) == 6
        assert caplog.text.count("Connection to the SaaS server failed!") == 1
        assert "new attempt in progress... (5)" in caplog.text
        assert "Reconnection to the SaaS server failed!" in caplog.text

    @pytest.mark.asyncio
    async def test_dropped_connection_counts_as_first_failure(
        self, config, tmp_path: Path, agent_keys, monkeypatch, caplog
    ) -> None:
        monkeypatch.setattr(crypto, "generate_keypair", lambda: agent_keys)
        agent = Agent(config, home=tmp_path)
        opens, events = [], []

        async def once_then_refuse():
            opens.append(1)
            if len(opens) > 1:
                raise ConnectionRefusedError("gone")
            reader = asyncio.StreamReader()
            reader.feed_eof()
            return EventChannel(reader, FakeWriter())

        manager = ConnectionManager(
            agent,
            policy=ReconnectPolicy(delay=0, delay_max=0, randomization=0),
            opener=once_then_refuse,
        )
        for name in ("connected", "disconnected", "reconnect_failed"):
            manager.add_listener(name, lambda name=name: events.append(name))

        with caplog.at_level("INFO", logger="saaslink.connection"):
            await asyncio.wait_for(manager.run(), 5)

        assert len(opens) == 6
        assert events == ["connected", "disconnected", "reconnect_failed"]
        assert "Disconnected from the SaaS server." in caplog.text
        assert "Connection to the SaaS server failed!" not in caplog.text

    @pytest.mark.asyncio
    async def test_socket_dropping_before_trust_proof(
        self, config, tmp_path: Path, agent_keys, peer_keys, monkeypatch, caplog
    ) -> None:
        monkeypatch.setattr(crypto, "generate_keypair", lambda: agent_keys)
        agent = Agent(config, home=tmp_path)
        channel = EventChannel(asyncio.StreamReader(), ResettingWriter())

        async def answer_public_key(event, data=None, timeout=None):
            return [crypto.export_pubkey_pem(peer_keys[1])]

        monkeypatch.setattr(channel, "call", answer_public_key)
        session = Session(token=SESSION_TOKEN)

        with caplog.at_level("WARNING", logger="saaslink.connection"):
            await asyncio.wait_for(agent.connection.handshake(channel, session), 5)

        assert "Trust proof not sent" in caplog.text
        assert not session.trusted

    @pytest.mark.asyncio
    async def test_stop_before_run(self, config, tmp_path: Path) -> None:
        async def never():
            raise AssertionError("should not connect")

        manager = ConnectionManager(Agent(config, home=tmp_path), opener=never)
        await manager.stop()
        await asyncio.wait_for(manager.run(), 1)


class FakeControlPlane:
    """Just enough of the control plane to run a handshake and send commands."""

    def __init__(self, keys, status: str = "ok") -> None:
        self.private_key, self.public_key = keys
        self.status = status
        self.proofs = []
        self.confirmations = []
        self.agent_key = None
        self.writer = None
        self.challenged = asyncio.Event()
        self._replies = {}
        self._next_id = 1000
        self.server = None

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        return self.server.sockets[0].getsockname()[1]

    async def close(self) -> None:
        self.server.close()
        await self.server.wait_closed()

    async def _serve(self, reader, writer) -> None:
        self.writer = writer
        try:
            while True:
                frame = await read_frame(reader)
                if frame is None:
                    break
                await self._route(frame)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def _route(self, frame) -> None:
        if frame["type"] == "ack":
            self._replies[frame["id"]].set_result(frame["args"])
            return

        event, data, ack_id = frame["event"], frame["data"], frame["id"]
        if event == m.GET_PUBLIC_KEY:
            await write_frame(self.writer, ack_frame(ack_id, [crypto.export_pubkey_pem(self.public_key)]))
        elif event == m.CHECK:
            proof = crypto.open_sealed(self.private_key, data)
            self.proofs.append(proof)
            self.agent_key = crypto.import_pubkey_pem(proof["publicKey"])
            challenge = crypto.seal(self.agent_key, {"status": self.status})
            await write_frame(self.writer, event_frame(m.AUTHORIZED, challenge))
            self.challenged.set()
        elif event == m.TEST_ENCRYPTION:
            self.confirmations.append(data)
            await write_frame(self.writer, ack_frame(ack_id, [None]))

    async def todo(self, command):
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._replies[self._next_id] = future
        data = {"appId": "app-1", "encrypted": crypto.seal(self.agent_key, command)}
        await write_frame(self.writer, event_frame(m.TODO, data, self._next_id))
        return await asyncio.wait_for(future, 10)


class TestEndToEnd:
    """A real socket, a real handshake, a real command."""

    @pytest.mark.asyncio
    async def test_handshake_then_command(self, config, peer_keys, tmp_path: Path) -> None:
        write_credentials(tmp_path)
        plane = FakeControlPlane(peer_keys)
        port = await plane.start()
        agent = Agent(dataclasses.replace(config, channel=f"127.0.0.1:{port}"), home=tmp_path)
        trusted = asyncio.Event()
        agent.connection.add_listener("handshake_complete", trusted.set)

        runner = asyncio.create_task(agent.run())
        try:
            await asyncio.wait_for(trusted.wait(), 20)

            proof = plane.proofs[0]
            assert proof["appId"] == "app-1"
            assert proof["secretKey"] == "s3cret"
            assert proof["token"] == SESSION_TOKEN
            confirmation = plane.confirmations[0]
            assert confirmation["token"] == SESSION_TOKEN
            assert crypto.open_sealed(peer_keys[0], confirmation["encrypted"]) == {
                "secretKey": "s3cret",
                "data": "ok",
            }

            args = await plane.todo({"from": SESSION_TOKEN, "to": "P", "action": "pullServer"})
            reply = open_reply(args, peer_keys)
            assert reply["err"] is None
            assert reply["data"]["token"] == SESSION_TOKEN

            args = await plane.todo({"from": "intruder", "to": "P", "action": "rebuild"})
            assert args == [m.BAD_TOKEN, None]
        finally:
            await agent.stop()
            await asyncio.wait_for(runner, 5)
            await plane.close()

    @pytest.mark.asyncio
    async def test_failed_challenge_keeps_session_untrusted(self, config, peer_keys, tmp_path: Path) -> None:
        write_credentials(tmp_path)
        plane = FakeControlPlane(peer_keys, status="ko")
        port = await plane.start()
        agent = Agent(dataclasses.replace(config, channel=f"127.0.0.1:{port}"), home=tmp_path)

        runner = asyncio.create_task(agent.run())
        try:
            await asyncio.wait_for(plane.challenged.wait(), 20)
            args = await plane.todo({"from": SESSION_TOKEN, "to": "P", "action": "pullServer"})
            assert args == [m.NOT_TRUSTED, None]
            assert plane.confirmations == []
        finally:
            await agent.stop()
            await asyncio.wait_for(runner, 5)
            await plane.close()
