"""Read/event surface of the lending pool contract."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from loanledger.errors import TransientChainError

LOGGER = logging.getLogger("loanledger.chain")

EVENT_NAMES = ("Deposit", "LoanCreated", "InstallmentPaid", "Payout", "LoanLiquidated")


def to_hex(value: Any) -> str:
    """Render a bytes-like value (tx hash, bytes32 id) as a lower-case 0x string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return (value if value.startswith("0x") else f"0x{value}").lower()
    if isinstance(value, int):
        return HexBytes(value.to_bytes(32, "big")).to_0x_hex()
    return HexBytes(value).to_0x_hex()


def loan_id_bytes(value: str) -> bytes:
    raw = HexBytes(value)
    if len(raw) < 32:
        raw = raw.rjust(32, b"\x00")
    return bytes(raw)


@dataclass(frozen=True)
class ChainEvent:
    name: str
    args: Dict[str, Any]
    transaction_hash: str
    block_number: int
    log_index: int = 0
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def idempotency_key(self) -> str:
        return f"{self.name}:{self.transaction_hash}:{self.log_index}"


class ChainClient:
    """Capabilities the reconciler needs from the chain.

    Amounts are returned as raw integers in token base units; callers convert
    them with the configured decimals.
    """

    def block_number(self) -> int:
        raise NotImplementedError

    def chain_id(self) -> int:
        raise NotImplementedError

    def block_timestamp(self, block_number: int) -> int:
        raise NotImplementedError

    def get_events(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        raise NotImplementedError

    def loans(self, loan_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def get_installment_schedule(self, loan_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_contributions(self, loan_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_price(self) -> int:
        raise NotImplementedError


def load_abi(path: str) -> List[Dict[str, Any]]:
    candidate = Path(path)
    with candidate.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict) and "abi" in payload:
        return payload["abi"]
    return payload


def _as_dict(value: Any, params: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    if hasattr(value, "_asdict"):
        return dict(value._asdict())
    if isinstance(value, dict):
        return dict(value)
    names = [param.get("name") or f"field{index}" for index, param in enumerate(params)]
    return dict(zip(names, value))


class Web3ChainClient(ChainClient):
    """Lending pool binding over a web3 HTTP provider.

    Built explicitly from configuration and handed to the processors, so tests
    can substitute any other :class:`ChainClient`.
    """

    def __init__(self, rpc_url: str, contract_address: str, abi: Iterable[Dict[str, Any]], *, timeout: int = 15) -> None:
        self.abi = list(abi)
        provider = Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        self.web3 = Web3(provider)
        try:
            self.web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError:  # pragma: no cover - already injected
            pass
        self.address = to_checksum_address(contract_address)
        self.contract = self.web3.eth.contract(address=self.address, abi=self.abi, decode_tuples=True)
        self._chain_id: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "Web3ChainClient":
        if not settings.rpc_url or not settings.contract_address:
            raise ValueError("RPC_URL and LENDING_POOL_ADDRESS are required")
        return cls(
            settings.rpc_url,
            settings.contract_address,
            load_abi(settings.abi_path),
            timeout=settings.rpc_timeout,
        )

    def _outputs(self, function_name: str) -> List[Dict[str, Any]]:
        for entry in self.abi:
            if entry.get("type") == "function" and entry.get("name") == function_name:
                return list(entry.get("outputs") or [])
        return []

    def _call(self, function_name: str, *args: Any) -> Any:
        try:
            return getattr(self.contract.functions, function_name)(*args).call()
        except Exception as exc:
            raise TransientChainError(
                f"{function_name} call failed", {"args": [to_hex(a) if isinstance(a, bytes) else a for a in args], "error": str(exc)}
            ) from exc

    def block_number(self) -> int:
        try:
            return int(self.web3.eth.block_number)
        except Exception as exc:
            raise TransientChainError("unable to fetch block number", {"error": str(exc)}) from exc

    def chain_id(self) -> int:
        if self._chain_id is None:
            try:
                self._chain_id = int(self.web3.eth.chain_id)
            except Exception as exc:
                raise TransientChainError("unable to fetch chain id", {"error": str(exc)}) from exc
        return self._chain_id

    def block_timestamp(self, block_number: int) -> int:
        try:
            return int(self.web3.eth.get_block(block_number)["timestamp"])
        except Exception as exc:
            raise TransientChainError("unable to fetch block", {"block": block_number, "error": str(exc)}) from exc

    def get_events(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        event_abi = getattr(self.contract.events, event_name, None)
        if event_abi is None:
            LOGGER.warning("Event %s missing from lending pool ABI", event_name)
            return []
        try:
            logs = event_abi().get_logs(from_block=from_block, to_block=to_block)
        except Exception as exc:
            raise TransientChainError(
                f"{event_name} log query failed",
                {"fromBlock": from_block, "toBlock": to_block, "error": str(exc)},
            ) from exc
        events = []
        for log in logs:
            events.append(
                ChainEvent(
                    name=event_name,
                    args=dict(log["args"]),
                    transaction_hash=to_hex(log["transactionHash"]),
                    block_number=int(log["blockNumber"]),
                    log_index=int(log.get("logIndex", 0)),
                )
            )
        return events

    def loans(self, loan_id: str) -> Dict[str, Any]:
        result = self._call("loans", loan_id_bytes(loan_id))
        outputs = self._outputs("loans")
        if len(outputs) == 1 and outputs[0].get("components"):
            return _as_dict(result, outputs[0]["components"])
        return _as_dict(result, outputs)

    def _tuple_list(self, function_name: str, loan_id: str) -> List[Dict[str, Any]]:
        result = self._call(function_name, loan_id_bytes(loan_id))
        outputs = self._outputs(function_name)
        components = outputs[0].get("components", []) if outputs else []
        return [_as_dict(item, components) for item in result]

    def get_installment_schedule(self, loan_id: str) -> List[Dict[str, Any]]:
        return self._tuple_list("getInstallmentSchedule", loan_id)

    def get_contributions(self, loan_id: str) -> List[Dict[str, Any]]:
        return self._tuple_list("getContributions", loan_id)

    def get_price(self) -> int:
        return int(self._call("getPrice"))


__all__ = ["ChainClient", "ChainEvent", "EVENT_NAMES", "Web3ChainClient", "load_abi", "loan_id_bytes", "to_hex"]
