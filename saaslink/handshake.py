import enum
import logging
from typing import Any, Dict, Optional

from . import crypto
from .config import AgentConfig

"""
handshake.py — session state and the public-key handshake.

Sequence (agent's view):
    1. begin_handshake       fresh RSA-2048 keypair for this connection
    2. on_peer_public_key    import the key returned by `getPublicKey`
    3. build_trust_proof     identity + our PUBLIC key, sealed for the peer (`check`)
    4. on_challenge          open `authorized` with our private key; status "ok"
                             means trusted, and we answer with a sealed
                             confirmation for `testEncryption`

Everything here is synchronous and does no I/O; the connection manager moves
the bytes. Failures after step 1 never raise: the session just stays
untrusted until the next full reconnect.
"""

logger = logging.getLogger("saaslink.handshake")

CONFIRMATION_MARKER = "ok"


class HandshakeError(RuntimeError):
    """Unrecoverable handshake failure (key generation)."""


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    KEY_EXCHANGED = "key_exchanged"
    TRUSTED = "trusted"


class Session:
    """
    Live connection state: keypair, peer key, token and trust.

    One Session per established transport connection; never resumed.
    """
    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token
        self.private_key = None
        self.public_key = None
        self.peer_key = None
        self.state = SessionState.DISCONNECTED

    @property
    def trusted(self) -> bool:
        return self.state is SessionState.TRUSTED

    def reset(self) -> None:
        """Drop everything learned on this connection."""
        self.private_key = None
        self.public_key = None
        self.peer_key = None
        self.state = SessionState.DISCONNECTED

    def __repr__(self) -> str:
        # Never include key material or the token.
        return f"<Session state={self.state.value} has_token={self.token is not None}>"


class HandshakeProtocol:
    """Drives one Session from Connecting to Trusted."""

    def __init__(self, config: AgentConfig) -> None:
        self.config = config

    def begin_handshake(self, session: Session) -> None:
        """Generate this session's keypair. Raises HandshakeError if that fails."""
        try:
            session.private_key, session.public_key = crypto.generate_keypair()
        except Exception as exc:
            session.reset()
            raise HandshakeError(f"Key generation failed: {exc}") from exc
        session.peer_key = None
        session.state = SessionState.CONNECTING

    def on_peer_public_key(self, session: Session, raw_key: Any) -> bool:
        """Import the control plane's key. False (and no exception) if unusable."""
        if session.private_key is None:
            return False
        try:
            session.peer_key = crypto.import_pubkey_pem(raw_key)
        except Exception as exc:
            logger.debug("Peer public key rejected: %s", type(exc).__name__)
            session.peer_key = None
            return False
        session.state = SessionState.KEY_EXCHANGED
        return True

    def trust_proof_payload(self, session: Session) -> Dict[str, Any]:
        """The identity object, before sealing. The private key never leaves."""
        proof = {
            "appId": self.config.app_id,
            "appName": self.config.name,
            "publicKey": crypto.export_pubkey_pem(session.public_key),
            "secretKey": self.config.secret_key,
            "env": self.config.environment,
        }
        if self.config.is_development and session.token is not None:
            proof["token"] = session.token
        return proof

    def build_trust_proof(self, session: Session) -> Dict[str, str]:
        """Seal the identity object with the peer's key (sent as `check`)."""
        if session.state is not SessionState.KEY_EXCHANGED or session.peer_key is None:
            raise HandshakeError("Peer public key has not been exchanged")
        return crypto.seal(session.peer_key, self.trust_proof_payload(session))

    def on_challenge(self, session: Session, ciphertext: Any) -> Optional[Dict[str, Any]]:
        """
        Check the `authorized` challenge.

        Returns the `testEncryption` payload when the session became trusted,
        otherwise None with the session left untrusted.
        """
        if session.private_key is None or session.peer_key is None:
            return None
        try:
            decrypted = crypto.open_sealed(session.private_key, ciphertext)
        except ValueError:
            logger.debug("Challenge could not be decrypted")
            return None

        if not isinstance(decrypted, dict) or decrypted.get("status") != "ok":
            return None

        session.state = SessionState.TRUSTED
        return self.confirmation(session)

    def confirmation(self, session: Session) -> Dict[str, Any]:
        """Known marker sealed for the peer so it can verify the round trip."""
        message: Dict[str, Any] = {
            "appId": self.config.app_id,
            "encrypted": crypto.seal(session.peer_key, {
                "secretKey": self.config.secret_key,
                "data": CONFIRMATION_MARKER,
            }),
        }
        if self.config.is_development:
            message["token"] = session.token
        else:
            message["env"] = self.config.environment
        return message
