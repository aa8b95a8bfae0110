"""
Ledger client for the document NFT contracts.

Three contracts are involved:

- IssuanceOfDocument: signs (mints) and revokes documents, and indexes
  them by on-chain document id and by student.
- DocumentNFT: the ERC-721 token holding per-token document metadata.
- StudentRegistry: maps wallet addresses to on-chain student records.

Web3LedgerClient talks to a node with web3.py's AsyncWeb3 and signs
transactions locally with the issuer key. MockLedgerClient keeps the
same state in memory for development and tests.

Mint and revoke are state-changing and are never retried here.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.logs import DISCARD

from issuance.app.core.config import Settings
from issuance.app.core.errors import UpstreamError

logger = logging.getLogger("issuance.ledger")

ABI_DIR = Path(__file__).resolve().parent.parent / "abis"


class LedgerError(UpstreamError):
    """A ledger call failed or returned an unusable result."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MintReceipt:
    tx_hash: str
    chain_doc_id: str
    token_id: str


@dataclass(frozen=True)
class StudentProfile:
    chain_id: int
    is_active: bool
    display_name: str
    student_code: str


@dataclass(frozen=True)
class TokenVerification:
    owner: str
    is_valid: bool
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def document_hash(self) -> Optional[str]:
        return self.metadata.get("documentHash")


class LedgerClient(Protocol):
    async def mint(
        self,
        student_chain_id: int,
        document_type: str,
        integrity_digest: str,
        metadata_uri: str,
    ) -> MintReceipt:
        ...

    async def revoke(self, chain_doc_id: str) -> str:
        ...

    async def resolve_chain_id(self, address: str) -> int:
        ...

    async def get_student_profile(self, chain_id: int) -> StudentProfile:
        ...

    async def verify(self, token_id: str) -> TokenVerification:
        ...

    async def get_document_info(self, chain_doc_id: str) -> Dict[str, Any]:
        ...

    async def get_student_nfts(self, chain_id: int) -> List[str]:
        ...


def _from_epoch(value: int) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


@lru_cache(maxsize=None)
def load_abi(name: str) -> List[Dict[str, Any]]:
    return json.loads((ABI_DIR / f"{name}.json").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# web3.py client
# ---------------------------------------------------------------------------

class Web3LedgerClient:
    """
    AsyncWeb3 contract client.

    Transactions are built against the pending nonce of the issuer
    account, signed locally and sent raw. Receipts are awaited up to
    ``mint_timeout`` seconds.
    """

    def __init__(self, settings: Settings, w3: Optional[AsyncWeb3] = None) -> None:
        if settings.admin_private_key is None or settings.blockchain_rpc_url is None:
            raise ValueError("Live ledger requires an RPC URL and an issuer key")

        self.settings = settings
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                str(settings.blockchain_rpc_url),
                request_kwargs={"timeout": settings.ledger_read_timeout},
            )
        )
        self.account = Account.from_key(settings.admin_private_key.get_secret_value())

        self.issuance = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.issuance_contract_address),
            abi=load_abi("IssuanceOfDocument"),
        )
        self.nft = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.document_nft_contract_address),
            abi=load_abi("DocumentNFT"),
        )
        self.registry = self.w3.eth.contract(
            address=Web3.to_checksum_address(settings.student_registry_contract_address),
            abi=load_abi("StudentRegistry"),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def mint(
        self,
        student_chain_id: int,
        document_type: str,
        integrity_digest: str,
        metadata_uri: str,
    ) -> MintReceipt:
        logger.info(
            "ledger_mint_submitting",
            extra={"student_chain_id": student_chain_id, "document_type": document_type},
        )
        call = self.issuance.functions.signDocument(
            Web3.to_bytes(hexstr=integrity_digest),
            student_chain_id,
            document_type,
            metadata_uri,
        )
        receipt = await self._transact(call)

        events = self.issuance.events.DocumentSigned().process_receipt(
            receipt, errors=DISCARD
        )
        if not events:
            raise LedgerError("DocumentSigned event not found in transaction logs")

        args = events[0]["args"]
        result = MintReceipt(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            chain_doc_id=Web3.to_hex(args["documentId"]),
            token_id=str(args["tokenId"]),
        )
        logger.info(
            "ledger_mint_confirmed",
            extra={
                "tx_hash": result.tx_hash,
                "token_id": result.token_id,
                "block_number": receipt.get("blockNumber"),
            },
        )
        return result

    async def revoke(self, chain_doc_id: str) -> str:
        call = self.issuance.functions.revokeDocument(Web3.to_bytes(hexstr=chain_doc_id))
        receipt = await self._transact(call)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info(
            "ledger_revoke_confirmed",
            extra={"chain_doc_id": chain_doc_id, "tx_hash": tx_hash},
        )
        return tx_hash

    async def _transact(self, call: Any) -> Dict[str, Any]:
        try:
            nonce = await self.w3.eth.get_transaction_count(
                self.account.address, "pending"
            )
            tx = await call.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "chainId": await self.w3.eth.chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.settings.mint_timeout
            )
        except LedgerError:
            raise
        except Exception as exc:
            logger.exception(
                "ledger_transaction_failed",
                extra={"error_type": type(exc).__name__},
            )
            raise LedgerError(f"Ledger transaction failed: {exc}") from exc

        if receipt.get("status") != 1:
            raise LedgerError(
                f"Transaction {Web3.to_hex(receipt['transactionHash'])} reverted"
            )
        return receipt

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def resolve_chain_id(self, address: str) -> int:
        chain_id = await self._read(
            self.registry.functions.getStudentIdByAddress(
                Web3.to_checksum_address(address)
            )
        )
        if not chain_id:
            raise LedgerError(f"No on-chain student registered for {address}")
        return int(chain_id)

    async def get_student_profile(self, chain_id: int) -> StudentProfile:
        student_code, full_name, _wallet, is_active = await self._read(
            self.registry.functions.getStudent(chain_id)
        )
        return StudentProfile(
            chain_id=chain_id,
            is_active=bool(is_active),
            display_name=full_name,
            student_code=student_code,
        )

    async def verify(self, token_id: str) -> TokenVerification:
        try:
            token = int(token_id)
        except ValueError:
            raise LedgerError(f"Token id must be an integer, got {token_id!r}") from None
        owner = await self._read(self.nft.functions.ownerOf(token))
        is_valid = await self._read(self.nft.functions.isDocumentValid(token))
        student_id, document_type, document_hash, issued_at, issued_by, meta_valid = (
            await self._read(self.nft.functions.getDocumentMetadata(token))
        )
        return TokenVerification(
            owner=owner,
            is_valid=bool(is_valid),
            metadata={
                "studentId": int(student_id),
                "documentType": document_type,
                "documentHash": Web3.to_hex(document_hash),
                "issuedAt": _from_epoch(issued_at),
                "issuedBy": issued_by,
                "isValid": bool(meta_valid),
            },
        )

    async def get_document_info(self, chain_doc_id: str) -> Dict[str, Any]:
        token_id, document_hash, student_id, created_at, signed_by, document_type, is_valid = (
            await self._read(
                self.issuance.functions.getDocumentInfo(Web3.to_bytes(hexstr=chain_doc_id))
            )
        )
        return {
            "tokenId": str(token_id),
            "documentHash": Web3.to_hex(document_hash),
            "studentId": int(student_id),
            "createdAt": _from_epoch(created_at),
            "signedBy": signed_by,
            "documentType": document_type,
            "isValid": bool(is_valid),
        }

    async def get_student_nfts(self, chain_id: int) -> List[str]:
        token_ids = await self._read(self.issuance.functions.getStudentNFTs(chain_id))
        return [str(token_id) for token_id in token_ids]

    async def _read(self, call: Any) -> Any:
        try:
            return await call.call()
        except Exception as exc:
            logger.exception(
                "ledger_read_failed",
                extra={"function": getattr(call, "fn_name", "?")},
            )
            raise LedgerError(f"Ledger read failed: {exc}") from exc


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------

class MockLedgerClient:
    """
    In-process ledger with the same observable behaviour as the contracts.

    Unknown wallet addresses are auto-registered as active students when
    ``auto_register`` is set; otherwise they fail resolution.
    """

    ISSUER = "0x000000000000000000000000000000000000dEaD"

    def __init__(self, *, auto_register: bool = True) -> None:
        self.auto_register = auto_register
        self.students: Dict[int, StudentProfile] = {}
        self.addresses: Dict[str, int] = {}
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)
        self._nonce = itertools.count(1)

    def register_student(
        self,
        address: str,
        *,
        display_name: str = "",
        student_code: str = "",
        is_active: bool = True,
    ) -> int:
        chain_id = next(self._ids)
        self.addresses[address.lower()] = chain_id
        self.students[chain_id] = StudentProfile(
            chain_id=chain_id,
            is_active=is_active,
            display_name=display_name,
            student_code=student_code,
        )
        return chain_id

    def _tx_hash(self) -> str:
        return Web3.to_hex(Web3.keccak(text=f"tx:{next(self._nonce)}"))

    async def mint(
        self,
        student_chain_id: int,
        document_type: str,
        integrity_digest: str,
        metadata_uri: str,
    ) -> MintReceipt:
        token_id = str(next(self._tokens))
        chain_doc_id = Web3.to_hex(
            Web3.keccak(text=f"{integrity_digest}:{student_chain_id}:{token_id}")
        )
        self.documents[chain_doc_id] = {
            "tokenId": token_id,
            "documentHash": integrity_digest,
            "studentId": student_chain_id,
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "signedBy": self.ISSUER,
            "documentType": document_type,
            "isValid": True,
            "tokenURI": metadata_uri,
        }
        self.tokens[token_id] = chain_doc_id
        return MintReceipt(
            tx_hash=self._tx_hash(), chain_doc_id=chain_doc_id, token_id=token_id
        )

    async def revoke(self, chain_doc_id: str) -> str:
        record = self.documents.get(chain_doc_id)
        if record is None:
            raise LedgerError(f"Unknown on-chain document {chain_doc_id}")
        record["isValid"] = False
        return self._tx_hash()

    async def resolve_chain_id(self, address: str) -> int:
        chain_id = self.addresses.get(address.lower())
        if chain_id is None:
            if not self.auto_register:
                raise LedgerError(f"No on-chain student registered for {address}")
            chain_id = self.register_student(address)
        return chain_id

    async def get_student_profile(self, chain_id: int) -> StudentProfile:
        try:
            return self.students[chain_id]
        except KeyError:
            raise LedgerError(f"Unknown student id {chain_id}") from None

    async def verify(self, token_id: str) -> TokenVerification:
        chain_doc_id = self.tokens.get(str(token_id))
        if chain_doc_id is None:
            raise LedgerError(f"Token {token_id} does not exist")
        record = self.documents[chain_doc_id]
        owner = next(
            (
                address
                for address, chain_id in self.addresses.items()
                if chain_id == record["studentId"]
            ),
            "",
        )
        return TokenVerification(
            owner=owner,
            is_valid=record["isValid"],
            metadata={
                "studentId": record["studentId"],
                "documentType": record["documentType"],
                "documentHash": record["documentHash"],
                "issuedAt": record["createdAt"],
                "issuedBy": record["signedBy"],
                "isValid": record["isValid"],
            },
        )

    async def get_document_info(self, chain_doc_id: str) -> Dict[str, Any]:
        record = self.documents.get(chain_doc_id)
        if record is None:
            raise LedgerError(f"Unknown on-chain document {chain_doc_id}")
        return {key: value for key, value in record.items() if key != "tokenURI"}

    async def get_student_nfts(self, chain_id: int) -> List[str]:
        return [
            record["tokenId"]
            for record in self.documents.values()
            if record["studentId"] == chain_id
        ]


def build_ledger_client(settings: Settings) -> LedgerClient:
    if settings.use_mock_blockchain:
        return MockLedgerClient()
    return Web3LedgerClient(settings)
