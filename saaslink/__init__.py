"""
saaslink — encrypted command channel between an application server and its
control plane.

- Fresh RSA-2048 keypair per connection; the private key never leaves.
- Trust only after the control plane answers a sealed challenge with status "ok".
- Every command and every reply travels as a sealed box (RSA-OAEP wrapped
  AES-256-GCM); only the pre-trust validation errors are plain text.
- Referenced archives are downloaded to deterministic scratch files, swapped
  into place, and cleaned up whether the transfer worked or not.
- A closed set of actions; anything else is answered with "Unknow action".
"""
__all__ = [
    "actions", "agent", "config", "connection", "crypto", "dispatcher",
    "filesync", "framing", "handshake", "messages", "run_agent",
]
