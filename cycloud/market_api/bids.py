"""Bid routes for placing, listing and deleting bids."""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status

from .auth import get_current_user
from .coordinator import AuctionCoordinator, get_coordinator
from .errors import AuthMismatch, MarketError
from .schemas import BidIn, BidOut, MessageOut
from .store import Store, get_store
from .streams import StreamManager, get_stream_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/", status_code=status.HTTP_201_CREATED)
async def place_bid(
    bid_in: BidIn,
    request: Request,
    uid: int = Depends(get_current_user),
    coordinator: AuctionCoordinator = Depends(get_coordinator),
    streams: StreamManager = Depends(get_stream_manager),
):
    """
    Place a bid on a resource under auction.

    The response is the bidder's event stream: a rejection with the better
    bid's terms, or the start and end of the compute session.
    """
    stream = streams.open(uid, "bidder")
    try:
        handle = await coordinator.place_bid(uid, bid_in.rid, bid_in.amount, bid_in.duration, stream)
    except MarketError:
        streams.detach(stream)
        raise
    logger.info("User %s placed bid %s on resource %s", uid, handle.bid, bid_in.rid)
    return streams.response(stream, request, status_code=status.HTTP_201_CREATED)


@router.get("/", response_model=List[BidOut])
def list_own_bids(uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """
    Retrieve every bid placed by the caller.

    Returns:
        List[BidOut]: The caller's bids, whatever their status.
    """
    return [BidOut.model_validate(b) for b in store.list_user_bids(uid)]


@router.delete("/{bid_id}", response_model=MessageOut)
async def delete_bid(
    bid_id: int,
    uid: int = Depends(get_current_user),
    store: Store = Depends(get_store),
    coordinator: AuctionCoordinator = Depends(get_coordinator),
):
    """Delete one of the caller's bids that is not computing."""
    owner = await asyncio.to_thread(store.bid_owner, bid_id)
    if owner != uid:
        raise AuthMismatch("bid does not belong to user")
    bid = await asyncio.to_thread(store.delete_bid, bid_id)
    coordinator.withdraw_bid(bid)
    return MessageOut(message="Bid deleted successfully")
