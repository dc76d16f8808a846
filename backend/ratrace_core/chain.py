from __future__ import annotations

import logging
import time
from typing import Optional, Protocol, Sequence, runtime_checkable

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from .config import SettlementMethod, Settings
from .errors import SettlementError

logger = logging.getLogger(__name__)

RACE_MANAGER_ABI = [
    {
        "type": "function",
        "name": "finishRace",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "raceId", "type": "uint256"},
            {"name": "winningOrder", "type": "uint256[6]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "recordRaceResults",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "raceId", "type": "uint256"},
            {"name": "winningRatTokenIds", "type": "uint256[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "cancelRace",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "raceId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "oracle",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

# Node answers meaning the exact signed transaction is already in the pool or mined.
_ALREADY_SUBMITTED_MARKERS = ("already known", "nonce too low", "known transaction")


@runtime_checkable
class RaceContract(Protocol):
    """The slice of the race manager contract the settlement driver uses."""

    sender_address: str

    def oracle_address(self) -> Optional[str]:
        ...

    def submit_settlement(self, race_id: str, positions: Sequence[str]) -> str:
        ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[bool]:
        ...

    def receipt_status(self, tx_hash: str) -> Optional[bool]:
        ...


class Web3RaceContract:
    """Signs and sends race manager transactions with the oracle key."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        method: SettlementMethod = SettlementMethod.FINISH_RACE,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.account = Account.from_key(private_key)
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=RACE_MANAGER_ABI,
        )
        self.method = method
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3RaceContract":
        return cls(
            rpc_url=settings.rpc_url,
            private_key=settings.oracle_private_key,
            contract_address=settings.race_manager_address,
            method=settings.settlement_method,
            timeout=settings.rpc_timeout_seconds,
            max_attempts=settings.rpc_max_attempts,
        )

    @property
    def sender_address(self) -> str:
        return self.account.address

    def oracle_address(self) -> Optional[str]:
        try:
            return Web3.to_checksum_address(self.contract.functions.oracle().call())
        except (ContractLogicError, ValueError):
            # Early contract versions have no oracle() getter.
            return None
        except (requests.RequestException, Web3Exception) as exc:
            raise SettlementError(f"Could not read oracle address: {exc}") from exc

    def submit_settlement(self, race_id: str, positions: Sequence[str]) -> str:
        order = [int(token_id) for token_id in positions]
        function = getattr(self.contract.functions, self.method.value)(int(race_id), order)

        try:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            transaction = function.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "chainId": self.w3.eth.chain_id,
                }
            )
        except ContractLogicError as exc:
            raise SettlementError(f"{self.method.value} would revert: {exc}") from exc
        except (requests.RequestException, Web3Exception) as exc:
            raise SettlementError(f"Could not prepare {self.method.value}: {exc}") from exc

        signed = self.account.sign_transaction(transaction)
        tx_hash = Web3.to_hex(signed.hash)

        # Resending the same signed bytes cannot produce a second settlement.
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.w3.eth.send_raw_transaction(signed.raw_transaction)
                logger.info("Submitted %s for race %s: %s", self.method.value, race_id, tx_hash)
                return tx_hash
            except ContractLogicError as exc:
                raise SettlementError(f"{self.method.value} reverted: {exc}") from exc
            except requests.RequestException as exc:
                if attempt == self.max_attempts:
                    raise SettlementError(
                        f"RPC unavailable after {attempt} attempts submitting race {race_id}: {exc}"
                    ) from exc
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning("RPC error submitting race %s (%s); retrying in %.1fs", race_id, exc, delay)
                time.sleep(delay)
            except Web3Exception as exc:
                if any(marker in str(exc).lower() for marker in _ALREADY_SUBMITTED_MARKERS):
                    logger.info("Settlement for race %s already in the pool: %s", race_id, tx_hash)
                    return tx_hash
                raise SettlementError(f"{self.method.value} rejected by node: {exc}") from exc

        raise SettlementError(f"Settlement for race {race_id} was not submitted")

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[bool]:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=2)
        except TimeExhausted:
            return None
        except (requests.RequestException, Web3Exception) as exc:
            logger.warning("Could not fetch receipt for %s: %s", tx_hash, exc)
            return None
        return int(receipt["status"]) == 1

    def receipt_status(self, tx_hash: str) -> Optional[bool]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (requests.RequestException, Web3Exception) as exc:
            logger.warning("Could not fetch receipt for %s: %s", tx_hash, exc)
            return None
        return int(receipt["status"]) == 1
