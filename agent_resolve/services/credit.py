"""Credit charges and the ledger that collects them.

Charges (all configurable via settings):

1. **Dispute filing cost**: free when the stated value is below
   ``free_dispute_value_cents`` or the claimant has filed fewer than
   ``monthly_free_dispute_limit`` disputes this calendar month. Otherwise
   ``dispute_base_cost_credits`` plus 100 credits per $1,000 of stated value,
   capped at ``dispute_max_cost_credits``.

2. **Escalation fee**: flat ``escalation_fee_credits``, charged to the operator
   of the party asking for human review.

3. **Transaction fee**: flat ``transaction_fee_credits`` per proposal. Zero by
   default.

The ledger itself is external. Every debit carries an idempotency reference, so
a caller that retries after a timeout is never charged twice.
"""

import abc
import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from agent_resolve.config import settings
from agent_resolve.errors import ExternalServiceError, InsufficientCreditsError

logger = logging.getLogger(__name__)


@dataclass
class Charge:
    """Itemized credit charge for an action."""
    fee_type: str  # "dispute", "escalation", "transaction"
    amount: int
    detail: str

    def to_dict(self) -> dict:
        return {"fee_type": self.fee_type, "amount": self.amount, "detail": self.detail}


@dataclass
class CreditReceipt:
    reference: str
    amount: int
    balance: int | None
    charged_at: datetime


def calculate_dispute_cost(stated_value: int | None, disputes_this_month: int) -> Charge:
    value = stated_value or 0
    if value < settings.free_dispute_value_cents:
        return Charge("dispute", 0, f"Stated value ${value / 100:,.2f} is below the paid threshold")
    if disputes_this_month < settings.monthly_free_dispute_limit:
        return Charge(
            "dispute",
            0,
            f"Free dispute {disputes_this_month + 1} of {settings.monthly_free_dispute_limit} this month",
        )
    amount = min(settings.dispute_max_cost_credits, settings.dispute_base_cost_credits + value // 1000)
    return Charge(
        "dispute",
        amount,
        f"Dispute filing: {settings.dispute_base_cost_credits} + 100 per $1,000 of ${value / 100:,.2f} "
        f"(max {settings.dispute_max_cost_credits})",
    )


def escalation_fee() -> Charge:
    return Charge("escalation", settings.escalation_fee_credits, "Human arbitrator review")


def transaction_fee() -> Charge:
    return Charge("transaction", settings.transaction_fee_credits, "Transaction proposal")


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_fee_schedule() -> dict:
    """Current charges, for display to operators before they act."""
    return {
        "dispute_filing": {
            "free_below_cents": settings.free_dispute_value_cents,
            "free_per_month": settings.monthly_free_dispute_limit,
            "base_credits": settings.dispute_base_cost_credits,
            "per_1000_dollars_credits": 100,
            "max_credits": settings.dispute_max_cost_credits,
        },
        "escalation": {"credits": settings.escalation_fee_credits},
        "transaction": {"credits": settings.transaction_fee_credits},
    }


class CreditLedger(abc.ABC):
    @abc.abstractmethod
    async def debit(self, operator_id: str, charge: Charge, reference: str) -> CreditReceipt:
        """Debit ``charge.amount`` exactly once per reference.

        Raises InsufficientCreditsError or ExternalServiceError. On either, no
        credits have moved.
        """


class HttpCreditLedger(CreditLedger):
    """Billing service client. The reference doubles as the Idempotency-Key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def debit(self, operator_id: str, charge: Charge, reference: str) -> CreditReceipt:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/operators/{operator_id}/debits",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Idempotency-Key": reference,
                    },
                    json={"amount": charge.amount, "reference": reference, **charge.to_dict()},
                )
            except httpx.TimeoutException:
                logger.error("Credit ledger timed out debiting %s", reference)
                raise ExternalServiceError("Credit ledger timed out", code="CREDIT_LEDGER_TIMEOUT")
            except httpx.RequestError as e:
                logger.error("Credit ledger request failed for %s: %s", reference, e)
                raise ExternalServiceError("Failed to reach credit ledger", code="CREDIT_LEDGER_UNAVAILABLE")

        if resp.status_code == 402:
            raise InsufficientCreditsError(
                f"Insufficient credits for {charge.fee_type}: {charge.amount} required"
            )
        if resp.status_code not in (200, 201):
            logger.error("Credit ledger returned %d for %s: %s", resp.status_code, reference, resp.text[:500])
            raise ExternalServiceError(
                f"Credit ledger debit failed (status {resp.status_code})", code="CREDIT_LEDGER_ERROR"
            )

        # An unreadable 2xx may still have been applied
        try:
            data = resp.json()
            balance = data.get("balance")
            if balance is not None:
                balance = int(balance)
        except (ValueError, TypeError, AttributeError):
            logger.error("Credit ledger sent an unreadable body for %s: %s", reference, resp.text[:500])
            raise ExternalServiceError(
                "Credit ledger returned an unreadable response", code="CREDIT_LEDGER_BAD_RESPONSE"
            )
        return CreditReceipt(
            reference=reference,
            amount=charge.amount,
            balance=balance,
            charged_at=datetime.now(UTC),
        )


class InMemoryCreditLedger(CreditLedger):
    """Per-process balances for development servers and tests."""

    def __init__(self, starting_balance: int = 0) -> None:
        self.starting_balance = starting_balance
        self.balances: dict[str, int] = {}
        self.receipts: dict[str, CreditReceipt] = {}
        self._lock = asyncio.Lock()

    def balance(self, operator_id: str) -> int:
        return self.balances.get(operator_id, self.starting_balance)

    async def debit(self, operator_id: str, charge: Charge, reference: str) -> CreditReceipt:
        async with self._lock:
            existing = self.receipts.get(reference)
            if existing is not None:
                return existing
            balance = self.balance(operator_id)
            if balance < charge.amount:
                raise InsufficientCreditsError(
                    f"Insufficient credits for {charge.fee_type}: balance {balance}, "
                    f"required {charge.amount}"
                )
            self.balances[operator_id] = balance - charge.amount
            receipt = CreditReceipt(
                reference=reference,
                amount=charge.amount,
                balance=self.balances[operator_id],
                charged_at=datetime.now(UTC),
            )
            self.receipts[reference] = receipt
            return receipt


async def charge(ledger: CreditLedger, operator_id: str, fee: Charge, reference: str) -> CreditReceipt | None:
    """Debit a non-zero charge. Free charges never touch the ledger."""
    if fee.amount <= 0:
        return None
    receipt = await ledger.debit(operator_id, fee, reference)
    logger.info(
        "Charged operator %s %d credits (%s, ref %s)", operator_id, fee.amount, fee.fee_type, reference
    )
    return receipt
