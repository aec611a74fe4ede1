from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import crypto

"""
messages.py — event names, command envelopes, and reply construction.

What this module does:
- Names every event the control plane and the agent exchange.
- Parses a decrypted command mapping into an immutable Envelope (plus its
  FileReferences) and reports which required attributes are missing.
- Turns a CommandResult into the wire reply {appId, token, encrypted}, where
  `encrypted` is a sealed box only the control plane can open.
- Serializes handler values "safely": anything JSON can't express becomes
  a string instead of breaking the reply.
"""

# -----------------------
# Event names on the wire
# -----------------------
CONNECT = "connect"
DISCONNECT = "disconnect"
ERROR = "error"
AUTHORIZED = "authorized"
GET_PUBLIC_KEY = "getPublicKey"
CHECK = "check"
TEST_ENCRYPTION = "testEncryption"
TODO = "todo"
ERR = "err"

# Source category whose archives extract in place.
MODULES = "modules"

# Plain-text replies; they never carry command data.
MISSING_ATTRIBUTES = "Some required attributes are missing"
BAD_TOKEN = "Bad user token"
UNKNOWN_ACTION = "Unknow action"
NOT_TRUSTED = "Session is not trusted"
UNDECRYPTABLE = "Unable to decrypt envelope"
REPLY_TOO_LARGE = "Reply too large"


class EnvelopeError(ValueError):
    """Raised when a decrypted command can't be turned into an Envelope."""


@dataclass(frozen=True)
class FileReference:
    """One archive to fetch and where to put it."""
    file_token: str
    source_category: str
    destination_path: str

    @property
    def is_module(self) -> bool:
        return self.source_category == MODULES

    @classmethod
    def from_wire(cls, raw: Any) -> "FileReference":
        if not isinstance(raw, dict):
            raise EnvelopeError("File reference must be an object")
        token, src, dest = raw.get("token"), raw.get("src"), raw.get("dest")
        if not isinstance(token, str) or not token:
            raise EnvelopeError("File reference is missing `token`")
        if not isinstance(dest, str) or not dest:
            raise EnvelopeError("File reference is missing `dest`")
        return cls(file_token=token, source_category=str(src or ""), destination_path=dest)


@dataclass(frozen=True)
class Envelope:
    """A decrypted command. `payload` is the full mapping handlers read from."""
    from_token: Any
    to_token: Any
    action: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    files: Tuple[FileReference, ...] = ()

    @property
    def has_files(self) -> bool:
        return bool(self.files)


def has_routing(data: Any) -> bool:
    """True when the mapping carries both `from` and `to`."""
    return isinstance(data, dict) and "from" in data and "to" in data


def parse_envelope(data: Dict[str, Any]) -> Envelope:
    """
    Build an Envelope from a decrypted command mapping.

    Raises EnvelopeError if routing attributes are absent or a file
    reference is malformed.
    """
    if not has_routing(data):
        raise EnvelopeError(MISSING_ATTRIBUTES)

    raw_files = data.get("files") or []
    if not isinstance(raw_files, list):
        raise EnvelopeError("`files` must be an array")
    files = tuple(FileReference.from_wire(f) for f in raw_files)

    action = data.get("action")
    if action is not None and not isinstance(action, str):
        action = str(action)

    return Envelope(
        from_token=data.get("from"),
        to_token=data.get("to"),
        action=action,
        payload=dict(data),
        files=files,
    )


# -----------------------
# Results and replies
# -----------------------

def safe_serialize(value: Any, _seen: Optional[set] = None) -> Any:
    """
    Convert `value` to something json.dumps accepts.

    Mappings and sequences are walked; cycles become "[Circular]" and any
    other unknown object becomes its str().
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    seen = _seen if _seen is not None else set()
    if id(value) in seen:
        return "[Circular]"

    if isinstance(value, dict):
        seen.add(id(value))
        out = {str(k): safe_serialize(v, seen) for k, v in value.items()}
        seen.discard(id(value))
        return out
    if isinstance(value, (list, tuple, set, frozenset)):
        seen.add(id(value))
        out = [safe_serialize(v, seen) for v in value]
        seen.discard(id(value))
        return out
    return str(value)


@dataclass(frozen=True)
class CommandResult:
    """Ok(value) or Err(description); exactly one per inbound envelope."""
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: Any = True) -> "CommandResult":
        return cls(value=value)

    @classmethod
    def err(cls, description: Any) -> "CommandResult":
        return cls(error=describe_error(description))

    @property
    def is_ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> Dict[str, Any]:
        if self.is_ok:
            return {"err": None, "data": safe_serialize(self.value)}
        return {"err": self.error, "data": None}


def describe_error(err: Any) -> str:
    """Human-readable text for an exception or an error value."""
    if isinstance(err, BaseException):
        return str(err) or type(err).__name__
    return str(err)


def build_reply(result: CommandResult, app_id: str, token: Optional[str], peer_key) -> Dict[str, Any]:
    """Seal a result for the control plane and attach routing metadata."""
    return {
        "appId": app_id,
        "token": token,
        "encrypted": crypto.seal(peer_key, result.to_wire()),
    }


def plain_error(message: str) -> List[Any]:
    """Ack arguments for a validation failure: [error, null]."""
    return [message, None]
