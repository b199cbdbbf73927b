# Custodial Escrow Ledger Service
import hashlib
import requests
from typing import Optional, Dict, Any
from pydantic import BaseModel
import logging

from config.app_config import (
    ESCROW_LEDGER_URL,
    ESCROW_LEDGER_API_KEY,
    ESCROW_PROGRAM_ID,
    ESCROW_REQUEST_TIMEOUT_SECONDS,
)
from services.exceptions import EscrowError

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


class EscrowConfig:
    """Escrow ledger configuration"""
    BASE_URL = ESCROW_LEDGER_URL
    API_KEY = ESCROW_LEDGER_API_KEY
    PROGRAM_ID = ESCROW_PROGRAM_ID
    TIMEOUT = ESCROW_REQUEST_TIMEOUT_SECONDS


class FeeSplit(BaseModel):
    amount: int
    fee_bps: int
    fee_amount: int
    fulfiller_amount: int


class EscrowConfirmation(BaseModel):
    escrow_handle: str
    action: str  # "release" | "refund"
    sequence_no: int
    fulfiller_amount: int = 0
    fee_amount: int = 0
    refund_amount: int = 0
    signature: Optional[str] = None


def compute_fee_split(amount: int, fee_bps: int) -> FeeSplit:
    """Platform fee is floor(amount * fee_bps / 10000); the fulfiller gets the rest."""
    if amount < 0:
        raise ValueError("amount must not be negative")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be within 0..{BPS_DENOMINATOR}, got {fee_bps}")
    fee = amount * fee_bps // BPS_DENOMINATOR
    return FeeSplit(amount=amount, fee_bps=fee_bps, fee_amount=fee, fulfiller_amount=amount - fee)


class EscrowService:
    """
    Client for the custodial escrow ledger.

    Each order's funds sit under a handle derived from its sequence number.
    With no ledger URL configured the service runs dry: calls are logged and
    return unsigned confirmations.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 program_id: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (EscrowConfig.BASE_URL if base_url is None else base_url).rstrip("/")
        self.api_key = EscrowConfig.API_KEY if api_key is None else api_key
        self.program_id = program_id or EscrowConfig.PROGRAM_ID
        self.timeout = timeout or EscrowConfig.TIMEOUT
        self.headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    @property
    def dry_run(self) -> bool:
        return not self.base_url

    def derive_handle(self, sequence_no: int) -> str:
        """Deterministic escrow handle: sha256(program_id | "escrow" | u64le(sequence_no))."""
        if sequence_no < 0:
            raise ValueError("sequence_no must not be negative")
        digest = hashlib.sha256()
        digest.update(self.program_id.encode("utf-8"))
        digest.update(b"escrow")
        digest.update(sequence_no.to_bytes(8, "little"))
        return digest.hexdigest()

    def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        """Make a request to the ledger API"""
        url = f"{self.base_url}{endpoint}"
        try:
            if method == "GET":
                response = requests.get(url, headers=self.headers, timeout=self.timeout)
            elif method == "POST":
                response = requests.post(url, headers=self.headers, json=data, timeout=self.timeout)
            else:
                raise ValueError(f"Unsupported method: {method}")

            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Escrow ledger error: {e}")
            raise EscrowError(f"Escrow ledger error: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Escrow ledger returned a malformed body for {endpoint}: {e}")
            raise EscrowError(f"Malformed escrow ledger response: {str(e)}") from e

        if not isinstance(body, dict):
            raise EscrowError(f"Malformed escrow ledger response for {endpoint}")
        return body

    def release(self, sequence_no: int, amount: int, fee_bps: int) -> EscrowConfirmation:
        """Pay the fulfiller amount minus fee; the fee goes to the treasury."""
        handle = self.derive_handle(sequence_no)
        split = compute_fee_split(amount, fee_bps)
        confirmation = EscrowConfirmation(
            escrow_handle=handle,
            action="release",
            sequence_no=sequence_no,
            fulfiller_amount=split.fulfiller_amount,
            fee_amount=split.fee_amount,
        )

        if self.dry_run:
            logger.info(
                f"[escrow] Dry-run release for order {sequence_no}: {handle} "
                f"(fulfiller={split.fulfiller_amount}, fee={split.fee_amount})"
            )
            return confirmation

        result = self._make_request("POST", f"/escrows/{handle}/release", {
            "sequence_no": sequence_no,
            "amount": amount,
            "fee_bps": fee_bps,
            "fulfiller_amount": split.fulfiller_amount,
            "fee_amount": split.fee_amount,
        })
        confirmation.signature = self._signature(result)
        logger.info(f"[escrow] Released order {sequence_no}: {confirmation.signature}")
        return confirmation

    def refund(self, sequence_no: int, amount: int) -> EscrowConfirmation:
        """Return the full amount to the requester."""
        handle = self.derive_handle(sequence_no)
        confirmation = EscrowConfirmation(
            escrow_handle=handle,
            action="refund",
            sequence_no=sequence_no,
            refund_amount=amount,
        )

        if self.dry_run:
            logger.info(f"[escrow] Dry-run refund for order {sequence_no}: {handle} (amount={amount})")
            return confirmation

        result = self._make_request("POST", f"/escrows/{handle}/refund", {
            "sequence_no": sequence_no,
            "amount": amount,
        })
        confirmation.signature = self._signature(result)
        logger.info(f"[escrow] Refunded order {sequence_no}: {confirmation.signature}")
        return confirmation

    def get_escrow_phase(self, sequence_no: int) -> Optional[str]:
        """
        Ledger-side phase of an escrow ("locked", "released", "refunded").

        Returns None in dry-run mode, where the ledger cannot be consulted.
        """
        if self.dry_run:
            return None
        handle = self.derive_handle(sequence_no)
        result = self._make_request("GET", f"/escrows/{handle}")
        phase = result.get("phase")
        if not isinstance(phase, str):
            raise EscrowError(f"Escrow ledger returned no phase for {handle}")
        return phase.lower()

    @staticmethod
    def _signature(result: Dict[str, Any]) -> str:
        signature = result.get("signature")
        if not isinstance(signature, str) or not signature:
            raise EscrowError("Escrow ledger response is missing the transaction signature")
        return signature


def get_escrow_service() -> EscrowService:
    """FastAPI dependency / factory for the escrow client."""
    return EscrowService()
