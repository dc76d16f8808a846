from typing import Any, Dict, List

import pytest
import requests
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from ratrace_core import chain as chain_module
from ratrace_core.chain import RaceContract, Web3RaceContract
from ratrace_core.config import SettlementMethod
from ratrace_core.errors import SettlementError

PRIVATE_KEY = "0x" + "11" * 32
CONTRACT_ADDRESS = "0x" + "22" * 20


class _Call:
    def __init__(self, owner: "_Functions", name: str, args: tuple) -> None:
        self.owner = owner
        self.name = name
        self.args = args

    def build_transaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.owner.revert:
            raise ContractLogicError("execution reverted: race not started")
        self.owner.built.append((self.name, self.args))
        return {
            "to": CONTRACT_ADDRESS,
            "value": 0,
            "gas": 200000,
            "gasPrice": 1,
            "data": "0x",
            **params,
        }

    def call(self) -> str:
        return self.owner.oracle_value


class _Functions:
    def __init__(self) -> None:
        self.revert = False
        self.oracle_value = "0x" + "33" * 20
        self.built: List[tuple] = []

    def __getattr__(self, name: str):
        return lambda *args: _Call(self, name, args)


class _FakeContractObject:
    def __init__(self) -> None:
        self.functions = _Functions()


class _FakeEth:
    def __init__(self) -> None:
        self.chain_id = 8453
        self.sent: List[bytes] = []
        self.failures: List[Exception] = []
        self.receipts: Dict[str, Any] = {}

    def get_transaction_count(self, address: str, block: str) -> int:
        return 4

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self.sent.append(raw)
        if self.failures:
            raise self.failures.pop(0)
        return b""

    def get_transaction_receipt(self, tx_hash: str) -> Dict[str, Any]:
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return self.receipts[tx_hash]


class _FakeWeb3:
    def __init__(self) -> None:
        self.eth = _FakeEth()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Web3RaceContract:
    monkeypatch.setattr(chain_module.time, "sleep", lambda _: None)
    contract = Web3RaceContract("http://localhost:8545", PRIVATE_KEY, CONTRACT_ADDRESS, max_attempts=3)
    contract.w3 = _FakeWeb3()
    contract.contract = _FakeContractObject()
    return contract


def test_web3_client_satisfies_protocol(client: Web3RaceContract) -> None:
    assert isinstance(client, RaceContract)


def test_submit_builds_finish_race_with_integer_order(client: Web3RaceContract) -> None:
    tx_hash = client.submit_settlement("12", ["3", "1", "2", "6", "5", "4"])

    assert tx_hash.startswith("0x") and len(tx_hash) == 66
    assert client.contract.functions.built == [("finishRace", (12, [3, 1, 2, 6, 5, 4]))]
    assert len(client.w3.eth.sent) == 1


def test_submit_uses_configured_method(client: Web3RaceContract) -> None:
    client.method = SettlementMethod.RECORD_RACE_RESULTS

    client.submit_settlement("12", ["3", "1", "2", "6", "5", "4"])

    assert client.contract.functions.built[0][0] == "recordRaceResults"


def test_transport_errors_resend_the_same_signed_transaction(client: Web3RaceContract) -> None:
    client.w3.eth.failures = [requests.ConnectionError("reset"), requests.Timeout("slow")]

    tx_hash = client.submit_settlement("12", ["1", "2", "3", "4", "5", "6"])

    sent = client.w3.eth.sent
    assert len(sent) == 3
    assert sent[0] == sent[1] == sent[2]
    assert tx_hash.startswith("0x")


def test_transport_errors_are_bounded(client: Web3RaceContract) -> None:
    client.w3.eth.failures = [requests.ConnectionError("down") for _ in range(3)]

    with pytest.raises(SettlementError, match="after 3 attempts"):
        client.submit_settlement("12", ["1", "2", "3", "4", "5", "6"])


def test_revert_is_not_retried(client: Web3RaceContract) -> None:
    client.contract.functions.revert = True

    with pytest.raises(SettlementError, match="would revert"):
        client.submit_settlement("12", ["1", "2", "3", "4", "5", "6"])
    assert client.w3.eth.sent == []


def test_already_known_counts_as_submitted(client: Web3RaceContract) -> None:
    client.w3.eth.failures = [Web3Exception("already known")]

    assert client.submit_settlement("12", ["1", "2", "3", "4", "5", "6"]).startswith("0x")


def test_other_node_rejections_raise(client: Web3RaceContract) -> None:
    client.w3.eth.failures = [Web3Exception("insufficient funds for gas")]

    with pytest.raises(SettlementError, match="insufficient funds"):
        client.submit_settlement("12", ["1", "2", "3", "4", "5", "6"])
    assert len(client.w3.eth.sent) == 1


def test_receipt_status(client: Web3RaceContract) -> None:
    client.w3.eth.receipts = {"0xaa": {"status": 1}, "0xbb": {"status": 0}}

    assert client.receipt_status("0xaa") is True
    assert client.receipt_status("0xbb") is False
    assert client.receipt_status("0xcc") is None


def test_oracle_address_is_checksummed(client: Web3RaceContract) -> None:
    assert client.oracle_address().lower() == "0x" + "33" * 20
