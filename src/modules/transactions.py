# src/modules/transactions.py
import logging
from dataclasses import replace
from typing import Any, Iterable, List

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.exceptions import StalePositionError, TransactionError, TransientNetworkError
from modules.venue import (
    COMPUTE_BUDGET_PROGRAM_ID,
    SET_COMPUTE_UNIT_PRICE,
    Instruction,
    Transaction,
    VenueClient,
    WalletProvider,
    as_transactions,
)

logger = logging.getLogger(__name__)

TRANSIENT_MARKERS = ("blockhash", "expired", "timeout", "timed out", "429", "too many requests", "connection")
STALE_MARKERS = ("not found", "does not exist", "already closed", "accountnotinitialized", "account not initialized")


def compute_unit_price_instruction(microlamports: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        data=bytes([SET_COMPUTE_UNIT_PRICE]) + int(microlamports).to_bytes(8, "little"),
    )


def is_compute_unit_price(instruction: Instruction) -> bool:
    return (
        instruction.program_id == COMPUTE_BUDGET_PROGRAM_ID
        and len(instruction.data) > 0
        and instruction.data[0] == SET_COMPUTE_UNIT_PRICE
    )


def dedupe_instructions(instructions: Iterable[Instruction]) -> List[Instruction]:
    """Elimina instrucciones idénticas repetidas, conservando el orden de la primera aparición."""
    seen = set()
    unique = []
    for instruction in instructions:
        if instruction in seen:
            logger.debug(f"Instrucción duplicada descartada para el programa {instruction.program_id}")
            continue
        seen.add(instruction)
        unique.append(instruction)
    return unique


def with_priority_fee(transaction: Transaction, microlamports: int) -> Transaction:
    """Deja exactamente una instrucción de precio de compute unit (modifica la existente si la hay)."""
    fee_instruction = compute_unit_price_instruction(microlamports)
    instructions = []
    fee_added = False
    for instruction in transaction.instructions:
        if is_compute_unit_price(instruction):
            if not fee_added:
                instructions.append(fee_instruction)
                fee_added = True
            continue
        instructions.append(instruction)
    if not fee_added:
        instructions.insert(0, fee_instruction)
    return replace(transaction, instructions=instructions)


def classify_submission_error(error: Exception) -> Exception:
    if isinstance(error, (TransientNetworkError, StalePositionError, TransactionError)):
        return error
    message = str(error).lower()
    # "Blockhash not found" es transitorio: se comprueba antes que los marcadores de posición obsoleta
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return TransientNetworkError(str(error))
    if any(marker in message for marker in STALE_MARKERS):
        return StalePositionError(str(error))
    return TransactionError(str(error))


class TransactionSender:
    def __init__(
        self,
        venue: VenueClient,
        wallet: WalletProvider,
        priority_fee_microlamports: int = 30000,
        max_retries: int = 3,
        backoff_seconds: float = 0.5
    ):
        self.venue = venue
        self.wallet = wallet
        self.priority_fee_microlamports = priority_fee_microlamports
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    def prepare(self, transaction: Transaction) -> Transaction:
        # La deduplicación va antes de añadir el priority fee
        deduped = replace(transaction, instructions=dedupe_instructions(transaction.instructions))
        return with_priority_fee(deduped, self.priority_fee_microlamports)

    def submit(self, transactions, extra_signers: Iterable[Any] = ()) -> List[str]:
        """Prepara, firma y envía cada transacción en orden. Devuelve las firmas."""
        signatures = []
        for transaction in as_transactions(transactions):
            prepared = self.prepare(transaction)
            signers = [self.wallet.signer(), *prepared.signers, *extra_signers]
            signature = self._send_with_retry(prepared, signers)
            logger.info(f"Transacción confirmada: {signature}")
            signatures.append(signature)
        return signatures

    def _send_once(self, transaction: Transaction, signers: List[Any]) -> str:
        try:
            return self.venue.send_and_confirm(transaction, signers)
        except Exception as e:
            classified = classify_submission_error(e)
            if isinstance(classified, TransientNetworkError):
                logger.warning(f"Error transitorio al enviar la transacción: {e}. Reintentando...")
            raise classified from e

    def _send_with_retry(self, transaction: Transaction, signers: List[Any]) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_seconds, min=self.backoff_seconds),
            retry=retry_if_exception_type(TransientNetworkError),
            reraise=True,
        )
        return retrying(self._send_once, transaction, signers)
