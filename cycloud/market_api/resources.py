"""Resource routes: publishing machines, toggling their auction, browsing offers."""

import asyncio
from typing import List

from fastapi import APIRouter, Depends, Request, status

from .auth import get_current_user
from .coordinator import AuctionCoordinator, get_coordinator
from .errors import AuthMismatch, MarketError
from .schemas import AvailabilityOut, MessageOut, ResourceCreated, ResourceOut, ResourceSpec
from .store import Store, get_store
from .streams import StreamManager, get_stream_manager

router = APIRouter()


def _check_owner(store: Store, uid: int, rid: int):
    if store.owner_of(rid) != uid:
        raise AuthMismatch("resource does not belong to user")


@router.get("/", response_model=List[ResourceOut])
def list_own_resources(uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """
    Retrieve every resource published by the caller.

    Returns:
        List[ResourceOut]: The caller's resources, ordered by rid.
    """
    return [ResourceOut.model_validate(r) for r in store.list_owned_resources(uid)]


@router.post("/", response_model=ResourceCreated, status_code=status.HTTP_201_CREATED)
def create_resource(
    spec: ResourceSpec,
    uid: int = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    """
    Publish a new resource. It starts unavailable.

    Args:
        spec (ResourceSpec): Hardware description and cost per minute.

    Returns:
        ResourceCreated: The rid of the new resource.
    """
    rid = store.create_resource(uid, spec.model_dump())
    return ResourceCreated(rid=rid)


@router.get("/available/{rid}/{direction}", response_model=List[ResourceOut])
def page_available_resources(
    rid: int,
    direction: str,
    uid: int = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    """Page through resources of other users that are open for bids, around ``rid``."""
    resources = store.page_available_resources_for_others(uid, rid, direction)
    return [ResourceOut.model_validate(r) for r in resources]


@router.get("/{rid}", response_model=ResourceOut)
def get_resource(rid: int, uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """Details of a resource, visible to its owner and to users who bid on it."""
    resource = store.get_resource(rid)
    if resource.uid != uid and not store.user_has_bid_on(uid, rid):
        raise AuthMismatch("there is no bid for the resource by the user")
    return ResourceOut.model_validate(resource)


@router.delete("/{rid}", response_model=MessageOut)
def delete_resource(rid: int, uid: int = Depends(get_current_user), store: Store = Depends(get_store)):
    """Remove an unavailable resource together with its settled bids."""
    _check_owner(store, uid, rid)
    store.delete_resource(rid)
    return MessageOut(message="Resource deleted successfully")


@router.post("/{rid}/availability")
async def toggle_availability(
    rid: int,
    request: Request,
    uid: int = Depends(get_current_user),
    store: Store = Depends(get_store),
    coordinator: AuctionCoordinator = Depends(get_coordinator),
    streams: StreamManager = Depends(get_stream_manager),
):
    """
    Flip the availability of a resource.

    Turning it off aborts the open auction window and answers with JSON.
    Turning it on starts an auction and answers with the loaner's event
    stream, which reports the outcome of the window.
    """
    await asyncio.to_thread(_check_owner, store, uid, rid)
    available = await asyncio.to_thread(store.flip_availability, rid)
    if not available:
        coordinator.revoke(rid)
        return AvailabilityOut(rid=rid, available=False, message="Resource is no longer available")

    stream = streams.open(uid, "loaner")
    try:
        coordinator.open(rid, uid, stream)
    except MarketError:
        streams.detach(stream)
        await asyncio.to_thread(store.flip_availability, rid)
        raise
    return streams.response(stream, request)
