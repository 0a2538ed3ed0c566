"""
Ledger client: the only place that talks web3.

The settlement engine consumes a small surface (estimate, submit, receipt,
transaction, balance, fee estimate, blocks, call decoding, pending nonce) and
gets typed errors back, so batch code can branch on the error class instead
of string-matching RPC messages everywhere.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from claim_settlement.core.config import Settings

logger = logging.getLogger(__name__)

# TokenDispatcher.batchTransfer(address[] recipients, uint256[] amounts)
TOKEN_DISPATCHER_ABI = [
    {
        "inputs": [
            {"name": "recipients", "type": "address[]"},
            {"name": "amounts", "type": "uint256[]"},
        ],
        "name": "batchTransfer",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]
BATCH_TRANSFER_FN = "batchTransfer"


class ErrorKind(str, enum.Enum):
    VALIDATION = "VALIDATION"
    FUNDS = "FUNDS"
    NONCE_CONFLICT = "NONCE_CONFLICT"
    NETWORK = "NETWORK"
    REVERTED = "REVERTED"
    UNKNOWN = "UNKNOWN"


class LedgerError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN


class LedgerNetworkError(LedgerError):
    """Timeouts, dropped connections, rate limits. Retryable."""
    kind = ErrorKind.NETWORK


class InsufficientFundsError(LedgerError):
    kind = ErrorKind.FUNDS


class NonceConflictError(LedgerError):
    kind = ErrorKind.NONCE_CONFLICT


class TransactionReverted(LedgerError):
    """The ledger definitively rejected the call. Not retryable within an attempt."""
    kind = ErrorKind.REVERTED


class ConfirmationTimeout(LedgerError):
    kind = ErrorKind.NETWORK


class NonceAllocationError(LedgerError):
    kind = ErrorKind.NETWORK


_FUNDS_MARKERS = ("insufficient funds",)
_NONCE_MARKERS = (
    "nonce too low",
    "nonce has already been used",
    "nonce already used",
    "replacement transaction underpriced",
)
_REVERT_MARKERS = ("execution reverted", "reverted")
_NETWORK_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
    "too many requests",
    "429",
    "502",
    "503",
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a raw web3 / requests exception (or one of ours) to an ErrorKind."""
    if isinstance(exc, LedgerError):
        return exc.kind
    msg = str(exc).lower()
    if any(m in msg for m in _FUNDS_MARKERS):
        return ErrorKind.FUNDS
    if any(m in msg for m in _NONCE_MARKERS):
        return ErrorKind.NONCE_CONFLICT
    if isinstance(exc, ContractLogicError) or any(m in msg for m in _REVERT_MARKERS):
        return ErrorKind.REVERTED
    if isinstance(exc, (TimeExhausted, requests.exceptions.ConnectionError, requests.exceptions.Timeout, TimeoutError)):
        return ErrorKind.NETWORK
    if any(m in msg for m in _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


_KIND_TO_ERROR = {
    ErrorKind.FUNDS: InsufficientFundsError,
    ErrorKind.NONCE_CONFLICT: NonceConflictError,
    ErrorKind.REVERTED: TransactionReverted,
    ErrorKind.NETWORK: LedgerNetworkError,
}


def as_ledger_error(exc: BaseException) -> LedgerError:
    if isinstance(exc, LedgerError):
        return exc
    cls = _KIND_TO_ERROR.get(classify_error(exc), LedgerError)
    err = cls(str(exc))
    err.__cause__ = exc
    return err


def clean_address(address: Optional[str]) -> Optional[str]:
    """Checksummed address, or None when blank/invalid."""
    if not address:
        return None
    candidate = address.strip()
    if not Web3.is_address(candidate):
        return None
    return Web3.to_checksum_address(candidate)


@dataclass(frozen=True)
class BatchTransferCall:
    recipients: tuple[str, ...]
    amounts: tuple[int, ...]

    def __post_init__(self) -> None:
        if len(self.recipients) != len(self.amounts):
            raise ValueError("recipients and amounts must be the same length")

    def __len__(self) -> int:
        return len(self.recipients)


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class ChainTransaction:
    tx_hash: str
    sender: Optional[str]
    to: Optional[str]
    data: str
    nonce: Optional[int] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class FeeEstimate:
    fee_per_gas: Optional[int]
    max_priority_fee: Optional[int] = None
    legacy: bool = False


@dataclass
class Block:
    number: int
    transactions: list[ChainTransaction] = field(default_factory=list)


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class LedgerClient:
    """web3-backed implementation of the ledger operations the engine consumes."""

    def __init__(
        self,
        w3: Web3,
        *,
        private_key: str,
        dispatcher_address: str,
        chain_id: int,
    ) -> None:
        dispatcher = clean_address(dispatcher_address)
        if not dispatcher:
            raise ValueError(f"Invalid TOKEN_DISPATCHER_ADDRESS: {dispatcher_address!r}")
        self.w3 = w3
        self.chain_id = chain_id
        self._account = Account.from_key(private_key)
        self.signer_address: str = self._account.address
        self.dispatcher_address: str = dispatcher
        self.contract = w3.eth.contract(address=dispatcher, abi=TOKEN_DISPATCHER_ABI)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "LedgerClient":
        if not cfg.admin_private_key:
            raise RuntimeError("ADMIN_PRIVATE_KEY not set in environment")
        w3 = Web3(Web3.HTTPProvider(cfg.rpc_url, request_kwargs={"timeout": 20}))
        client = cls(
            w3,
            private_key=cfg.admin_private_key,
            dispatcher_address=cfg.dispatcher_address,
            chain_id=cfg.chain_id,
        )
        if cfg.admin_wallet_address and clean_address(cfg.admin_wallet_address) != client.signer_address:
            logger.warning(
                "ADMIN_WALLET_ADDRESS %s does not match the signing key (%s); using the key's address",
                cfg.admin_wallet_address,
                client.signer_address,
            )
        logger.info(
            "Ledger client ready: chain_id=%s rpc=%s dispatcher=%s signer=%s",
            cfg.chain_id,
            cfg.rpc_url,
            client.dispatcher_address,
            client.signer_address,
        )
        return client

    # --- reads ---

    def block_number(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as e:
            raise as_ledger_error(e) from e

    def get_pending_nonce(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_transaction_count(address, "pending"))
        except Exception as e:
            raise as_ledger_error(e) from e

    def get_balance(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_balance(address))
        except Exception as e:
            raise as_ledger_error(e) from e

    def get_fee_estimate(self) -> FeeEstimate:
        """EIP-1559 max fee (2x base + tip) when the chain reports a base fee, else legacy gas price."""
        try:
            latest = self.w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
            if base_fee is not None:
                try:
                    priority = int(self.w3.eth.max_priority_fee)
                except Exception:
                    priority = 0
                return FeeEstimate(fee_per_gas=int(base_fee) * 2 + priority, max_priority_fee=priority)
            gas_price = self.w3.eth.gas_price
            return FeeEstimate(fee_per_gas=int(gas_price) if gas_price else None, legacy=True)
        except Exception as e:
            raise as_ledger_error(e) from e

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt if mined, None if the node doesn't have one yet."""
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise as_ledger_error(e) from e
        return self._to_receipt(raw) if raw else None

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise LedgerNetworkError(f"timeout waiting for receipt of {tx_hash}") from e
        except Exception as e:
            raise as_ledger_error(e) from e
        return self._to_receipt(raw)

    def get_transaction(self, tx_hash: str) -> Optional[ChainTransaction]:
        try:
            raw = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise as_ledger_error(e) from e
        return self._to_transaction(raw) if raw else None

    def get_block(self, number: int, full_transactions: bool = True) -> Optional[Block]:
        try:
            raw = self.w3.eth.get_block(number, full_transactions=full_transactions)
        except Exception as e:
            raise as_ledger_error(e) from e
        if not raw:
            return None
        txs = []
        if full_transactions:
            txs = [self._to_transaction(t) for t in raw.get("transactions", []) if not isinstance(t, (bytes, str))]
        return Block(number=int(raw["number"]), transactions=txs)

    def decode_call(self, data: str) -> Optional[BatchTransferCall]:
        """Decode batchTransfer calldata; None for anything else."""
        try:
            fn, params = self.contract.decode_function_input(data)
        except Exception:
            return None
        if fn.fn_name != BATCH_TRANSFER_FN:
            return None
        recipients, amounts = list(params.values())[:2]
        return BatchTransferCall(
            recipients=tuple(Web3.to_checksum_address(r) for r in recipients),
            amounts=tuple(int(a) for a in amounts),
        )

    # --- writes ---

    def estimate_gas(self, call: BatchTransferCall) -> int:
        try:
            fn = self.contract.functions.batchTransfer(list(call.recipients), list(call.amounts))
            return int(fn.estimate_gas({"from": self.signer_address}))
        except Exception as e:
            raise as_ledger_error(e) from e

    def submit(self, call: BatchTransferCall, nonce: int, gas_limit: int) -> str:
        """Sign and broadcast batchTransfer with an explicit nonce and gas limit. Returns the tx hash."""
        try:
            fees = self.get_fee_estimate()
            tx_params: dict[str, Any] = {
                "from": self.signer_address,
                "nonce": int(nonce),
                "gas": int(gas_limit),
                "chainId": int(self.chain_id),
            }
            if fees.legacy or fees.max_priority_fee is None:
                tx_params["gasPrice"] = int(fees.fee_per_gas or self.w3.eth.gas_price)
            else:
                tx_params["maxFeePerGas"] = int(fees.fee_per_gas)
                tx_params["maxPriorityFeePerGas"] = int(fees.max_priority_fee)
            tx = self.contract.functions.batchTransfer(
                list(call.recipients), list(call.amounts)
            ).build_transaction(tx_params)
            signed = self._account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            return _hex(tx_hash)
        except LedgerError:
            raise
        except Exception as e:
            raise as_ledger_error(e) from e

    # --- helpers ---

    @staticmethod
    def _to_receipt(raw: Any) -> TxReceipt:
        status = raw.get("status")
        return TxReceipt(
            tx_hash=_hex(raw["transactionHash"]),
            status=1 if status is None else int(status),
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
        )

    @staticmethod
    def _to_transaction(raw: Any) -> ChainTransaction:
        data = raw.get("input", raw.get("data", "0x"))
        return ChainTransaction(
            tx_hash=_hex(raw["hash"]),
            sender=raw.get("from"),
            to=raw.get("to"),
            data=_hex(data) if data else "0x",
            nonce=raw.get("nonce"),
            block_number=raw.get("blockNumber"),
        )
