"""
The network collaborator: an ``Agent`` interface and an HTTP implementation
speaking the replica's v2 API with CBOR envelopes.

Request ids follow the representation-independent hash of the request
content; envelopes are signed with the active identity. Certificates returned
by ``read_state`` are looked up in their hash tree, but their BLS signatures
are not verified.
"""
import asyncio
import hashlib
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cbor2
import httpx

from canrepl.canrepl_candid import leb128
from canrepl.canrepl_errors import CallTimeout, NetworkError, RejectError
from canrepl.canrepl_identity import Identity, AnonymousIdentity
from canrepl.canrepl_principal import PrincipalId

DOMAIN_SEPARATOR = b"\x0aic-request"
SELF_DESCRIBE_TAG = 55799
INGRESS_EXPIRY = 5 * 60


def _dbg(*parts):
    if os.environ.get("CANREPL_DEBUG"):
        import sys
        print("[DBG]", *parts, file=sys.stderr)


@dataclass
class CallStatus:
    """The state of an update call as read back from the replica."""
    status: str
    reply: Optional[bytes] = None
    reject_code: Optional[int] = None
    reject_message: Optional[str] = None


# =================================================================
# Request ids, envelopes, certificates
# =================================================================

def _hash_value(v) -> bytes:
    match v:
        case bytes() | bytearray():
            return hashlib.sha256(bytes(v)).digest()
        case str():
            return hashlib.sha256(v.encode("utf-8")).digest()
        case bool():
            raise TypeError("booleans are not valid request fields")
        case int():
            return hashlib.sha256(leb128(v)).digest()
        case list() | tuple():
            return hashlib.sha256(b"".join(_hash_value(x) for x in v)).digest()
        case dict():
            return request_id(v)
    raise TypeError(f"cannot hash request field of type {type(v).__name__}")


def request_id(content: Dict[str, Any]) -> bytes:
    pairs = sorted(
        hashlib.sha256(k.encode("utf-8")).digest() + _hash_value(v)
        for k, v in content.items() if v is not None
    )
    return hashlib.sha256(b"".join(pairs)).digest()


def ingress_expiry(seconds: int = INGRESS_EXPIRY) -> int:
    return int((time.time() + seconds) * 1_000_000_000)


def call_content(request_type: str, sender: PrincipalId, canister_id: PrincipalId,
                 method: str, arg: bytes, expiry: Optional[int] = None) -> Dict[str, Any]:
    return {
        "request_type": request_type,
        "sender": sender.raw,
        "canister_id": canister_id.raw,
        "method_name": method,
        "arg": bytes(arg),
        "ingress_expiry": expiry or ingress_expiry(),
    }


def read_state_content(sender: PrincipalId, paths, expiry: Optional[int] = None) -> Dict[str, Any]:
    return {
        "request_type": "read_state",
        "sender": sender.raw,
        "paths": [list(p) for p in paths],
        "ingress_expiry": expiry or ingress_expiry(),
    }


def sign_envelope(identity: Identity, content: Dict[str, Any]) -> tuple[bytes, bytes]:
    """Returns (request_id, CBOR envelope)."""
    rid = request_id(content)
    envelope: Dict[str, Any] = {"content": content}
    sig = identity.sign(DOMAIN_SEPARATOR + rid)
    if sig is not None:
        envelope["sender_pubkey"] = identity.public_key()
        envelope["sender_sig"] = sig
    return rid, cbor2.dumps(cbor2.CBORTag(SELF_DESCRIBE_TAG, envelope))


def decode_cbor(data: bytes) -> Any:
    try:
        value = cbor2.loads(data)
    except cbor2.CBORDecodeError as e:
        raise NetworkError(f"invalid CBOR from replica: {e}") from e
    if isinstance(value, cbor2.CBORTag) and value.tag == SELF_DESCRIBE_TAG:
        value = value.value
    return value


def _find_label(node, label: bytes):
    match node:
        case [1, left, right]:
            found = _find_label(left, label)
            return found if found is not None else _find_label(right, label)
        case [2, lbl, sub] if bytes(lbl) == label:
            return sub
    return None


def lookup_path(tree, path) -> Optional[bytes]:
    """Looks up a path of labels in a certificate hash tree; returns the leaf or None."""
    node = tree
    for label in path:
        node = _find_label(node, label if isinstance(label, bytes) else label.encode("utf-8"))
        if node is None:
            return None
    match node:
        case [3, leaf]:
            return bytes(leaf)
    return None


def _read_leb(data: bytes) -> int:
    n, shift = 0, 0
    for b in data:
        n |= (b & 0x7F) << shift
        shift += 7
        if not b & 0x80:
            break
    return n


def status_from_tree(tree, rid: bytes) -> CallStatus:
    base = [b"request_status", rid]
    status = lookup_path(tree, base + [b"status"])
    if status is None:
        return CallStatus("unknown")
    status = status.decode("utf-8")
    match status:
        case "replied":
            return CallStatus(status, reply=lookup_path(tree, base + [b"reply"]))
        case "rejected":
            code = lookup_path(tree, base + [b"reject_code"])
            msg = lookup_path(tree, base + [b"reject_message"])
            return CallStatus(status, reject_code=_read_leb(code or b"\x00"),
                              reject_message=(msg or b"").decode("utf-8", "replace"))
    return CallStatus(status)


# =================================================================
# Agent interface
# =================================================================

class Agent(ABC):
    """What the invocation protocol needs from the network."""

    def __init__(self, identity: Optional[Identity] = None):
        self.identity = identity or AnonymousIdentity()

    @abstractmethod
    async def query(self, canister_id: PrincipalId, method: str, arg: bytes,
                    effective_canister_id: Optional[PrincipalId] = None) -> bytes:
        raise NotImplementedError

    @abstractmethod
    async def submit(self, canister_id: PrincipalId, method: str, arg: bytes,
                     effective_canister_id: Optional[PrincipalId] = None) -> bytes:
        """Sends an update call; returns its request id."""
        raise NotImplementedError

    @abstractmethod
    async def request_status(self, effective_canister_id: PrincipalId, request_id: bytes) -> CallStatus:
        raise NotImplementedError

    @abstractmethod
    async def read_state_metadata(self, canister_id: PrincipalId, name: str) -> Optional[bytes]:
        raise NotImplementedError


async def http_post(client: httpx.AsyncClient, url: str, body: bytes, *,
                    retries: int = 2, backoff: float = 0.2) -> httpx.Response:
    last_exc = None
    for attempt in range(retries + 1):
        try:
            return await client.post(url, content=body, headers={"Content-Type": "application/cbor"})
        except httpx.TransportError as e:
            last_exc = e
            if attempt < retries:
                await asyncio.sleep(backoff * (2 ** attempt))
                continue
    raise NetworkError(f"cannot reach {url}: {last_exc}") from last_exc


class HttpAgent(Agent):
    def __init__(self, url: str, identity: Optional[Identity] = None, *,
                 timeout: float = 30.0, retries: int = 2, backoff: float = 0.2,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(identity)
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport)

    async def post(self, endpoint: str, effective_canister_id: PrincipalId, envelope: bytes) -> bytes:
        url = f"{self.url}/api/v2/canister/{effective_canister_id}/{endpoint}"
        _dbg("POST", url, len(envelope), "bytes")
        async with self._client() as client:
            resp = await http_post(client, url, envelope, retries=self.retries, backoff=self.backoff)
        if not 200 <= resp.status_code < 300:
            preview = (resp.text or "")[:200]
            raise NetworkError(f"HTTP {resp.status_code} for {url}: {preview}")
        return resp.content

    # --- pre-signed envelopes, also used to replay offline messages ---
    async def send_query(self, effective_canister_id: PrincipalId, envelope: bytes) -> bytes:
        response = decode_cbor(await self.post("query", effective_canister_id, envelope))
        match response:
            case {"status": "replied", "reply": {"arg": arg}}:
                return bytes(arg)
            case {"status": "rejected"}:
                raise RejectError(response.get("reject_code", 0), response.get("reject_message", ""))
        raise NetworkError(f"unexpected query response: {response!r}")

    async def send_call(self, effective_canister_id: PrincipalId, envelope: bytes):
        await self.post("call", effective_canister_id, envelope)

    async def send_read_state(self, effective_canister_id: PrincipalId, envelope: bytes):
        response = decode_cbor(await self.post("read_state", effective_canister_id, envelope))
        if not isinstance(response, dict) or "certificate" not in response:
            raise NetworkError("read_state response has no certificate")
        certificate = decode_cbor(bytes(response["certificate"]))
        return certificate.get("tree")

    # --- Agent ---
    async def query(self, canister_id, method, arg, effective_canister_id=None) -> bytes:
        content = call_content("query", self.identity.sender(), canister_id, method, arg)
        _, envelope = sign_envelope(self.identity, content)
        return await self.send_query(effective_canister_id or canister_id, envelope)

    async def submit(self, canister_id, method, arg, effective_canister_id=None) -> bytes:
        content = call_content("call", self.identity.sender(), canister_id, method, arg)
        rid, envelope = sign_envelope(self.identity, content)
        await self.send_call(effective_canister_id or canister_id, envelope)
        return rid

    async def request_status(self, effective_canister_id, request_id) -> CallStatus:
        content = read_state_content(self.identity.sender(), [[b"request_status", request_id]])
        _, envelope = sign_envelope(self.identity, content)
        tree = await self.send_read_state(effective_canister_id, envelope)
        return status_from_tree(tree, request_id)

    async def read_state_metadata(self, canister_id, name) -> Optional[bytes]:
        path = [b"canister", canister_id.raw, b"metadata", name.encode("utf-8")]
        content = read_state_content(self.identity.sender(), [path])
        _, envelope = sign_envelope(self.identity, content)
        tree = await self.send_read_state(canister_id, envelope)
        return lookup_path(tree, path)


async def wait_for_reply(fetch_status, poll, canister=None, method: Optional[str] = None) -> bytes:
    """
    Polls ``fetch_status()`` until the call is replied or rejected, sleeping
    by the poll policy's backoff. Raises CallTimeout past the policy deadline.
    """
    deadline = time.monotonic() + poll.timeout
    delays = poll.delays()
    while True:
        status = await fetch_status()
        _dbg("STATUS", status.status)
        match status.status:
            case "replied":
                if status.reply is None:
                    raise NetworkError("replied status without a reply", canister, method)
                return status.reply
            case "rejected":
                raise RejectError(status.reject_code or 0, status.reject_message or "", canister, method)
            case "done":
                raise NetworkError("call is done but its reply is no longer available", canister, method)
        if time.monotonic() >= deadline:
            raise CallTimeout(f"no reply after {poll.timeout:g}s", canister, method)
        await asyncio.sleep(next(delays))
