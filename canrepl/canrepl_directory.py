"""
The canister directory: principal -> CanisterInfo, filled on first lookup and
cached for the whole session.
"""
import functools
from pathlib import Path
from typing import Dict, Optional

from canrepl.canrepl_candid import encode_args, decode_args
from canrepl.canrepl_did import CanisterInfo, compile_did
from canrepl.canrepl_errors import ReplError, NetworkError, InterfaceError
from canrepl.canrepl_principal import PrincipalId
from canrepl.canrepl_types import TEXT, TVec, tuple_type, prim
from canrepl.canrepl_values import Text, Vec

IC_DID = Path(__file__).parent / "ic.did"
CANDID_METADATA = "candid:service"
NAME_METADATA = "name"
CANDID_QUERY = "__get_candid_interface_tmp_hack"

# the "name" section is a candid vec record { nat16; text }
_NAME_SECTION = TVec(tuple_type([prim("nat16"), TEXT]))


@functools.lru_cache(maxsize=1)
def management_info() -> CanisterInfo:
    return compile_did(IC_DID.read_text(encoding="utf-8"), str(IC_DID.parent))


def parse_name_section(data: bytes) -> Dict[int, str]:
    values = decode_args(data, [_NAME_SECTION])
    names = {}
    if values and isinstance(values[0], Vec):
        for rec in values[0].items:
            idx, name = rec.get(0), rec.get(1)
            if idx is not None and isinstance(name, Text):
                names[int(idx)] = name.value
    return names


class CanisterDirectory:
    def __init__(self, session):
        self.session = session
        self._cache: Dict[PrincipalId, CanisterInfo] = {
            PrincipalId.management(): management_info(),
        }

    def __contains__(self, canister_id: PrincipalId) -> bool:
        return canister_id in self._cache

    def register(self, canister_id: PrincipalId, info: CanisterInfo):
        self._cache[canister_id] = info

    def register_did(self, canister_id: PrincipalId, path: Path) -> CanisterInfo:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise InterfaceError(f"cannot read interface file {path}: {e}") from e
        info = compile_did(text, str(Path(path).parent))
        self.register(canister_id, info)
        return info

    def cached(self, canister_id: PrincipalId) -> Optional[CanisterInfo]:
        return self._cache.get(canister_id)

    async def get(self, canister_id: PrincipalId) -> CanisterInfo:
        info = self._cache.get(canister_id)
        if info is None:
            info = await self._fetch(canister_id)
            self._cache[canister_id] = info
        return info

    async def _fetch(self, canister_id: PrincipalId) -> CanisterInfo:
        agent = self.session.agent
        if agent is None or self.session.offline:
            self.session.warn(f"no interface available for {canister_id}, values are sent untyped")
            return CanisterInfo()
        did = await self._fetch_did(canister_id)
        if did is None:
            self.session.warn(f"cannot fetch candid interface for {canister_id}, values are sent untyped")
            return CanisterInfo()
        try:
            info = compile_did(did)
        except ReplError as e:
            self.session.warn(f"cannot parse candid interface for {canister_id} ({e}), values are sent untyped")
            return CanisterInfo()
        if info.has_profiling():
            info.profiling = await self._fetch_names(canister_id)
        return info

    async def _fetch_did(self, canister_id: PrincipalId) -> Optional[str]:
        agent = self.session.agent
        try:
            data = await agent.read_state_metadata(canister_id, CANDID_METADATA)
            if data is not None:
                return data.decode("utf-8")
        except (NetworkError, UnicodeDecodeError):
            pass
        try:
            reply = await agent.query(canister_id, CANDID_QUERY, encode_args([]), canister_id)
            values = decode_args(reply, [TEXT])
        except ReplError:
            return None
        return values[0].value

    async def _fetch_names(self, canister_id: PrincipalId) -> Dict[int, str]:
        try:
            data = await self.session.agent.read_state_metadata(canister_id, NAME_METADATA)
            return parse_name_section(data) if data is not None else {}
        except ReplError:
            return {}
