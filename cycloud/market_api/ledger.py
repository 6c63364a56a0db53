"""
Credit accounting in front of the store.

Every operation that admits a bid or moves credits goes through the
CreditLedger, which keeps the escrow invariant:

    credits(u) >= sum(amount * duration) over pending and running bids of u
"""

import logging
import math
from typing import Tuple

from fastapi import Request

from .config import SettlementPolicy
from .errors import BadRequest, MarketError
from .metrics import record_bid, record_settlement
from .models import Bid
from .store import Store

logger = logging.getLogger(__name__)


def check_terms(amount: float, duration: int):
    if not (amount > 0 and math.isfinite(amount)):
        raise BadRequest("bid amount must be positive")
    if duration <= 0:
        raise BadRequest("bid duration must be positive")


class CreditLedger:
    """Admits bids against the escrow invariant and settles finished computations."""

    def __init__(self, store: Store, policy: SettlementPolicy = SettlementPolicy.QUOTED):
        self.store = store
        self.policy = policy

    def admit_bid(self, uid: int, rid: int, amount: float, duration: int) -> Bid:
        """
        Insert a pending bid if the user can cover it.

        The escrow sum and the insertion share one store transaction, so two
        concurrent placements cannot both pass a marginal check.

        Raises:
            BadRequest: If amount or duration is not positive.
            InsufficientCredits: If the commitment would exceed the balance.
            PreconditionFailed: If the resource or bid rules refuse the bid.
        """
        check_terms(amount, duration)
        try:
            bid = self.store.insert_bid(uid, rid, amount, duration)
        except MarketError as exc:
            record_bid(exc.error_code.lower())
            raise
        record_bid("admitted")
        return bid

    def charge_for(self, bid: Bid, elapsed_minutes: float) -> float:
        """Credits owed for a finished bid under the configured policy."""
        if self.policy is SettlementPolicy.PER_MINUTE:
            return bid.amount
        if self.policy is SettlementPolicy.ELAPSED:
            return bid.amount * min(max(elapsed_minutes, 0.0), bid.duration)
        return bid.amount * bid.duration

    def settle(self, bid: Bid, loaner_uid: int, elapsed_minutes: float) -> float:
        """Transfer the charge for ``bid`` to the loaner and end its compute phase."""
        amount = self.charge_for(bid, elapsed_minutes)
        self.store.settle(bid.rid, bid.bid, loaner_uid, bid.uid, amount)
        record_settlement(amount)
        return amount

    def add_credits(self, uid: int, amount: float) -> float:
        if not (amount > 0 and math.isfinite(amount)):
            raise BadRequest("Invalid credits amount")
        credits = self.store.add_credits(uid, amount)
        logger.info("User %s topped up %.2f credits", uid, amount)
        return credits

    def escrow_status(self, uid: int) -> Tuple[float, float]:
        """Return (credits held, credits committed) for a user."""
        return self.store.sum_credits(uid), self.store.escrow_commitment(uid)


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger
