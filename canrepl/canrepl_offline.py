"""
Offline signing: calls are signed but never sent. Each call becomes an
``IngressWithStatus`` (the signed call plus, for updates, a signed status
request), printed as JSON and kept in the session's message log. A separate
``send`` pass replays the log after confirming each message.
"""
import json
from dataclasses import dataclass, field, asdict
from typing import Callable, List, Optional, Tuple

from canrepl.canrepl_agent import (
    call_content, read_state_content, sign_envelope, decode_cbor, status_from_tree, wait_for_reply,
)
from canrepl.canrepl_candid import decode_args
from canrepl.canrepl_errors import ConfigError, ReplError
from canrepl.canrepl_principal import PrincipalId


@dataclass
class Ingress:
    call_type: str
    request_id: Optional[str]
    content: str

    def parse(self) -> Tuple[PrincipalId, PrincipalId, str, bytes]:
        """Returns (sender, canister_id, method_name, arg) from the signed envelope."""
        try:
            envelope = decode_cbor(bytes.fromhex(self.content))
            content = envelope["content"]
            return (PrincipalId(content["sender"]), PrincipalId(content["canister_id"]),
                    content["method_name"], bytes(content["arg"]))
        except (ValueError, KeyError, TypeError, ReplError) as e:
            raise ConfigError(f"invalid message content: {e}") from e


@dataclass
class RequestStatus:
    canister_id: str
    request_id: str
    content: str


@dataclass
class IngressWithStatus:
    ingress: Ingress
    request_status: Optional[RequestStatus] = None


@dataclass
class Messages:
    replica_url: Optional[str] = None
    messages: List[IngressWithStatus] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, text: str) -> 'Messages':
        try:
            data = json.loads(text)
            msgs = []
            for m in data["messages"]:
                status = m.get("request_status")
                msgs.append(IngressWithStatus(
                    Ingress(**m["ingress"]),
                    RequestStatus(**status) if status else None,
                ))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ConfigError(f"invalid messages file: {e}") from e
        return cls(data.get("replica_url"), msgs)


def message_json(message: IngressWithStatus) -> str:
    return json.dumps(asdict(message))


def sign_call(identity, canister_id: PrincipalId, method: str, arg: bytes,
              effective_canister_id: PrincipalId, is_query: bool) -> IngressWithStatus:
    sender = identity.sender()
    if is_query:
        content = call_content("query", sender, canister_id, method, arg)
        _, envelope = sign_envelope(identity, content)
        return IngressWithStatus(Ingress("query", None, envelope.hex()))
    content = call_content("call", sender, canister_id, method, arg)
    rid, envelope = sign_envelope(identity, content)
    status_content = read_state_content(sender, [[b"request_status", rid]])
    _, status_envelope = sign_envelope(identity, status_content)
    return IngressWithStatus(
        Ingress("update", rid.hex(), envelope.hex()),
        RequestStatus(str(effective_canister_id), rid.hex(), status_envelope.hex()),
    )


def summarize(ingress: Ingress) -> str:
    from canrepl.canrepl_printer import Printer
    sender, canister_id, method, arg = ingress.parse()
    try:
        args = Printer().pformat_args(decode_args(arg))
    except ReplError:
        args = arg.hex()
    return "\n".join([
        f"  Call type:   {ingress.call_type}",
        f"  Sender:      {sender}",
        f"  Canister id: {canister_id}",
        f"  Method name: {method}",
        f"  Arguments:   {args}",
    ])


async def send_message(agent, message: IngressWithStatus, poll) -> bytes:
    ingress = message.ingress
    _, canister_id, method, _ = ingress.parse()
    envelope = bytes.fromhex(ingress.content)
    if ingress.call_type == "query":
        return await agent.send_query(canister_id, envelope)
    status = message.request_status
    if status is None:
        raise ConfigError("update message has no request_status to poll")
    effective = PrincipalId.from_text(status.canister_id)
    rid = bytes.fromhex(status.request_id)
    status_envelope = bytes.fromhex(status.content)
    await agent.send_call(effective, envelope)

    async def fetch():
        tree = await agent.send_read_state(effective, status_envelope)
        return status_from_tree(tree, rid)

    return await wait_for_reply(fetch, poll, canister_id, method)


async def send_messages(messages: Messages, agent, poll,
                        confirm: Callable[[str], bool],
                        emit: Callable[[str], None] = print) -> List[bytes]:
    """
    Replays a message log. Each message is summarized and sent only when
    ``confirm(summary)`` returns True; the first refusal stops the replay.
    Returns the raw replies of the messages that were sent.
    """
    replies = []
    for message in messages.messages:
        summary = summarize(message.ingress)
        emit(f"Sending message with\n\n  Replica URL: {messages.replica_url}\n{summary}")
        if not confirm(summary):
            break
        replies.append(await send_message(agent, message, poll))
    return replies
