import hashlib

import pytest

from canrepl.canrepl_agent import Agent, CallStatus
from canrepl.canrepl_env import Session, PollPolicy
from canrepl.canrepl_errors import RejectError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_runtime import ScriptRunner


class FakeAgent(Agent):
    """
    In-memory replica. Handlers are keyed by (canister text, method) and are
    either raw reply bytes or a callable taking the argument bytes. An update
    handler may also be a list of CallStatus values returned in turn.
    """

    def __init__(self, identity=None):
        super().__init__(identity)
        self.queries = {}
        self.updates = {}
        self.metadata = {}
        self.calls = []
        self._statuses = {}

    async def query(self, canister_id, method, arg, effective_canister_id=None):
        self.calls.append(("query", str(canister_id), method, arg, effective_canister_id))
        handler = self.queries.get((str(canister_id), method))
        if handler is None:
            raise RejectError(3, f"canister has no query method {method}")
        return handler(arg) if callable(handler) else handler

    async def submit(self, canister_id, method, arg, effective_canister_id=None):
        self.calls.append(("update", str(canister_id), method, arg, effective_canister_id))
        rid = hashlib.sha256(f"{len(self.calls)}:{method}".encode()).digest()
        handler = self.updates.get((str(canister_id), method))
        if handler is None:
            statuses = [CallStatus("rejected", reject_code=3,
                                   reject_message=f"canister has no update method {method}")]
        elif isinstance(handler, list):
            statuses = list(handler)
        else:
            reply = handler(arg) if callable(handler) else handler
            statuses = [CallStatus("processing"), CallStatus("replied", reply=reply)]
        self._statuses[rid] = statuses
        return rid

    async def request_status(self, effective_canister_id, request_id):
        statuses = self._statuses[request_id]
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    async def read_state_metadata(self, canister_id, name):
        return self.metadata.get((str(canister_id), name))


FAST_POLL = PollPolicy(initial=0, factor=1.0, max_delay=0, timeout=5)

CANISTER = PrincipalId.from_canister_index(1)
WALLET = PrincipalId.from_canister_index(2)


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def make_runner(tmp_path):
    def factory(agent=None, **options):
        options.setdefault("poll", FAST_POLL)
        return ScriptRunner(Session(agent, **options), base_path=str(tmp_path))
    return factory
