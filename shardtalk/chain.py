"""
Read-only access to the ShardTalk chat contract.

The contract exposes an append-only, totally ordered message log through
getTotalMessageCount() and getMessages(start, count).
"""

import logging
from dataclasses import dataclass
from typing import Any, List

from web3 import Web3

logger = logging.getLogger(__name__)

CHAT_CONTRACT_ABI = [
    {
        "name": "getTotalMessageCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getMessages",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "start", "type": "uint256"},
            {"name": "count", "type": "uint256"},
        ],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "messageId", "type": "uint256"},
                    {"name": "sender", "type": "address"},
                    {"name": "content", "type": "string"},
                    {"name": "timestamp", "type": "uint256"},
                ],
            }
        ],
    },
]


@dataclass(frozen=True)
class LedgerRecord:
    message_id: int
    sender: str
    content: str
    timestamp: int

    @classmethod
    def from_contract(cls, raw: Any) -> "LedgerRecord":
        """Build a record from a decoded struct, positional or named."""
        if isinstance(raw, dict):
            fields = (raw["messageId"], raw["sender"], raw["content"], raw["timestamp"])
        elif hasattr(raw, "messageId"):
            fields = (raw.messageId, raw.sender, raw.content, raw.timestamp)
        else:
            fields = tuple(raw)
        message_id, sender, content, timestamp = fields
        return cls(
            message_id=int(message_id),
            sender=str(sender),
            content=str(content),
            timestamp=int(timestamp),
        )


class ContractChainReader:
    """Chain Reader backed by a JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, contract_address: str, timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.contract_address = contract_address
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CHAT_CONTRACT_ABI,
        )

    def get_total_message_count(self) -> int:
        total = int(self.contract.functions.getTotalMessageCount().call())
        logger.debug(f"Ledger reports {total} messages")
        return total

    def get_messages(self, start: int, count: int) -> List[LedgerRecord]:
        raw_messages = self.contract.functions.getMessages(start, count).call()
        return [LedgerRecord.from_contract(raw) for raw in raw_messages]
