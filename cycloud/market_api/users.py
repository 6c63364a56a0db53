"""Routes about the calling user: account summary and credit top-ups."""

from fastapi import APIRouter, Depends

from .auth import get_current_user
from .ledger import CreditLedger, get_ledger
from .schemas import CreditsIn, CreditsOut, UserInfo
from .store import Store, get_store

router = APIRouter()


@router.get("/me", response_model=UserInfo)
def read_user_info(uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """
    Summarize the caller's account.

    Returns:
        UserInfo: Credits, resource counts, credits held by pending bids and
        running loans.
    """
    return UserInfo(**store.user_info(uid))


@router.post("/me/credits", response_model=CreditsOut)
def add_credits(
    credits_in: CreditsIn,
    uid: int = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    return CreditsOut(credits=ledger.add_credits(uid, credits_in.amount))
