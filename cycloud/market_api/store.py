"""
Durable state of the marketplace.

The Store owns users, wallets, tokens, resources and bids. Every public method
runs in its own transaction; the checks that guard money and bid admission
happen inside the same transaction as the write they protect.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import (
    AuthInvalid,
    BadRequest,
    BidBelowFloor,
    BidNotCompetitive,
    InsufficientCredits,
    Internal,
    InternalStoreFailure,
    MarketError,
    NotFound,
    PreconditionFailed,
    ResourceNotBiddable,
)
from .models import Bid, BidStatus, Resource, Token, User, Wallet, outbids

logger = logging.getLogger(__name__)

PAGE_SIZE = 20


class Store:
    """Transactional access to the market database."""

    def __init__(self, session_factory: sessionmaker, page_size: int = PAGE_SIZE):
        self._session_factory = session_factory
        self.page_size = page_size

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except MarketError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Store transaction failed")
            raise InternalStoreFailure(f"store failure: {exc.__class__.__name__}") from exc
        finally:
            session.close()

    # Locking helpers. FOR UPDATE is a no-op on SQLite, where the engine
    # serializes whole transactions instead.

    def _lock_resource(self, session: Session, rid: int) -> Optional[Resource]:
        return session.query(Resource).filter(Resource.rid == rid).with_for_update().first()

    def _lock_wallets(self, session: Session, uids: Iterable[int]) -> Dict[int, Wallet]:
        # Ascending uid order prevents deadlocks between concurrent transfers
        wallets = (
            session.query(Wallet)
            .filter(Wallet.uid.in_(sorted(set(uids))))
            .order_by(Wallet.uid)
            .with_for_update()
            .all()
        )
        return {wallet.uid: wallet for wallet in wallets}

    def _commitment(self, session: Session, uid: int) -> float:
        total = (
            session.query(func.coalesce(func.sum(Bid.amount * Bid.duration), 0.0))
            .filter(
                Bid.uid == uid,
                or_(
                    Bid.status == BidStatus.PENDING.value,
                    and_(Bid.status == BidStatus.ACCEPTED.value, Bid.computing.is_(True)),
                ),
            )
            .scalar()
        )
        return float(total or 0.0)

    def _best_pending(self, session: Session, rid: int) -> Optional[Bid]:
        return (
            session.query(Bid)
            .filter(Bid.rid == rid, Bid.status == BidStatus.PENDING.value)
            .order_by(Bid.amount.desc(), Bid.duration.desc(), Bid.created_at.asc(), Bid.bid.asc())
            .first()
        )

    # Users and sessions

    def register_or_authenticate(self, hashed_user: str, hashed_pass: str) -> Tuple[int, bool]:
        """
        Return the uid of the user, registering it with an empty wallet if new.

        Raises:
            AuthInvalid: If the user exists and the password does not match.
        """
        with self.transaction() as session:
            user = session.query(User).filter(User.username == hashed_user).first()
            if user is None:
                user = User(username=hashed_user, password=hashed_pass, created_at=datetime.utcnow())
                session.add(user)
                session.flush()
                session.add(Wallet(uid=user.uid, credits=0.0))
                logger.info("Registered user %s", user.uid)
                return user.uid, True
            if user.password != hashed_pass:
                raise AuthInvalid()
            return user.uid, False

    def issue_session_token(self, uid: int, token: str):
        with self.transaction() as session:
            session.add(Token(uid=uid, token=token))

    def resolve_token(self, token: str) -> int:
        with self.transaction() as session:
            row = session.query(Token).filter(Token.token == token).first()
            if row is None:
                raise AuthInvalid("token not found")
            return row.uid

    def revoke_tokens_of_user(self, uid: int) -> int:
        with self.transaction() as session:
            return session.query(Token).filter(Token.uid == uid).delete(synchronize_session=False)

    # Resources

    def create_resource(self, uid: int, spec: dict) -> int:
        with self.transaction() as session:
            resource = Resource(
                uid=uid,
                cpu_cores=spec["cpu_cores"],
                memory=spec["memory"],
                storage=spec["storage"],
                gpu=spec["gpu"],
                bandwidth=spec["bandwidth"],
                cost_per_minute=spec["cost_per_minute"],
                available=False,
                computing=False,
                created_at=datetime.utcnow(),
            )
            session.add(resource)
            session.flush()
            logger.info("User %s created resource %s", uid, resource.rid)
            return resource.rid

    def delete_resource(self, rid: int):
        """
        Delete a resource and its settled bids.

        Raises:
            NotFound: If the resource does not exist.
            PreconditionFailed: If the resource is still available.
        """
        with self.transaction() as session:
            resource = self._lock_resource(session, rid)
            if resource is None:
                raise NotFound("resource not found")
            if resource.available:
                raise PreconditionFailed(
                    "Resource is still available, please make it unavailable before removing"
                )
            session.query(Bid).filter(Bid.rid == rid).delete(synchronize_session=False)
            session.delete(resource)

    def flip_availability(self, rid: int) -> bool:
        """
        Toggle the availability of a resource and return the new value.

        Turning a resource off rejects every pending bid on it in the same
        transaction.
        """
        with self.transaction() as session:
            resource = self._lock_resource(session, rid)
            if resource is None:
                raise NotFound("resource not found")
            if resource.computing:
                raise PreconditionFailed("resource is currently computing")
            resource.available = not resource.available
            if not resource.available:
                rejected = (
                    session.query(Bid)
                    .filter(Bid.rid == rid, Bid.status == BidStatus.PENDING.value)
                    .update({Bid.status: BidStatus.REJECTED.value}, synchronize_session=False)
                )
                logger.info("Resource %s withdrawn, %d pending bids rejected", rid, rejected)
            return resource.available

    def is_available(self, rid: int) -> bool:
        return self.get_resource(rid).available

    def owner_of(self, rid: int) -> int:
        return self.get_resource(rid).uid

    def get_resource(self, rid: int) -> Resource:
        with self.transaction() as session:
            resource = session.get(Resource, rid)
            if resource is None:
                raise NotFound("resource not found")
            return resource

    def list_owned_resources(self, uid: int) -> List[Resource]:
        with self.transaction() as session:
            return session.query(Resource).filter(Resource.uid == uid).order_by(Resource.rid).all()

    def page_available_resources_for_others(self, uid: int, pivot_rid: int, direction: str) -> List[Resource]:
        """
        Return up to a page of available resources owned by others, next to a pivot.

        ``prev`` returns the page just below the pivot, ``next`` the page just
        above it. Both are ordered by rid.
        """
        if direction not in ("prev", "next"):
            raise BadRequest("Invalid direction")
        with self.transaction() as session:
            query = session.query(Resource).filter(
                Resource.available.is_(True),
                Resource.uid != uid,
            )
            if direction == "prev":
                rows = (
                    query.filter(Resource.rid < pivot_rid)
                    .order_by(Resource.rid.desc())
                    .limit(self.page_size)
                    .all()
                )
                return list(reversed(rows))
            return query.filter(Resource.rid > pivot_rid).order_by(Resource.rid).limit(self.page_size).all()

    def list_available_resources(self) -> List[Resource]:
        """Resources that are offered and idle, used to re-open auctions on startup."""
        with self.transaction() as session:
            return (
                session.query(Resource)
                .filter(Resource.available.is_(True), Resource.computing.is_(False))
                .order_by(Resource.rid)
                .all()
            )

    # Bids

    def insert_bid(self, uid: int, rid: int, amount: float, duration: int) -> Bid:
        """
        Admit a new pending bid.

        Checks, in one transaction: the resource is biddable, the escrow
        invariant holds with the new commitment, the amount beats the
        resource's cost per minute, and the bid beats the best pending bid.
        """
        with self.transaction() as session:
            resource = self._lock_resource(session, rid)
            if resource is None:
                raise NotFound("resource not found")
            if resource.uid == uid:
                raise ResourceNotBiddable("cannot bid on your own resource")
            if not resource.available:
                raise ResourceNotBiddable("resource is not available for bidding")
            if resource.computing:
                raise ResourceNotBiddable("resource is currently computing")

            wallet = self._lock_wallets(session, [uid]).get(uid)
            if wallet is None:
                raise Internal(f"user {uid} has no wallet")
            attempted = self._commitment(session, uid) + amount * duration
            if wallet.credits < attempted:
                raise InsufficientCredits(wallet.credits, attempted)

            if not amount > resource.cost_per_minute:
                raise BidBelowFloor()

            leader = self._best_pending(session, rid)
            if leader is not None and not outbids(amount, duration, leader.amount, leader.duration):
                raise BidNotCompetitive()

            bid = Bid(
                uid=uid,
                rid=rid,
                amount=amount,
                duration=duration,
                status=BidStatus.PENDING.value,
                computing=False,
                created_at=datetime.utcnow(),
            )
            session.add(bid)
            session.flush()
            logger.info("Bid %s by user %s on resource %s: %.2f x %d", bid.bid, uid, rid, amount, duration)
            return bid

    def _accept(self, session: Session, bid: Bid, resource: Resource):
        running = (
            session.query(Bid)
            .filter(Bid.rid == bid.rid, Bid.computing.is_(True), Bid.bid != bid.bid)
            .count()
        )
        if running:
            raise Internal(f"resource {bid.rid} already has a computing bid")
        bid.status = BidStatus.ACCEPTED.value
        bid.computing = True
        bid.started_at = datetime.utcnow()
        resource.computing = True

    def mark_bid_accepted(self, bid_id: int) -> Bid:
        with self.transaction() as session:
            bid = session.query(Bid).filter(Bid.bid == bid_id).with_for_update().first()
            if bid is None:
                raise NotFound("bid not found")
            resource = self._lock_resource(session, bid.rid)
            self._accept(session, bid, resource)
            return bid

    def mark_bid_rejected(self, bid_id: int) -> bool:
        """Reject a bid that is still undecided. Returns False if it already was."""
        with self.transaction() as session:
            updated = (
                session.query(Bid)
                .filter(
                    Bid.bid == bid_id,
                    Bid.status.in_([BidStatus.PENDING.value, BidStatus.PROCESSING.value]),
                )
                .update(
                    {Bid.status: BidStatus.REJECTED.value, Bid.computing: False},
                    synchronize_session=False,
                )
            )
            return bool(updated)

    def reject_pending_bids(self, rid: int) -> int:
        with self.transaction() as session:
            return (
                session.query(Bid)
                .filter(Bid.rid == rid, Bid.status == BidStatus.PENDING.value)
                .update({Bid.status: BidStatus.REJECTED.value}, synchronize_session=False)
            )

    def pick_max_bid(self, rid: int) -> Optional[Bid]:
        """
        Resolve an auction window.

        Moves the resource's pending bids to processing, accepts the best one
        (highest amount, then longest duration, then earliest) and rejects the
        rest. Returns None when there is nothing to award.
        """
        with self.transaction() as session:
            resource = self._lock_resource(session, rid)
            if resource is None or not resource.available or resource.computing:
                return None

            session.query(Bid).filter(
                Bid.rid == rid, Bid.status == BidStatus.PENDING.value
            ).update({Bid.status: BidStatus.PROCESSING.value}, synchronize_session=False)

            winner = (
                session.query(Bid)
                .filter(Bid.rid == rid, Bid.status == BidStatus.PROCESSING.value)
                .order_by(Bid.amount.desc(), Bid.duration.desc(), Bid.created_at.asc(), Bid.bid.asc())
                .first()
            )
            if winner is None:
                return None

            session.query(Bid).filter(
                Bid.rid == rid,
                Bid.status == BidStatus.PROCESSING.value,
                Bid.bid != winner.bid,
            ).update(
                {Bid.status: BidStatus.REJECTED.value, Bid.computing: False},
                synchronize_session=False,
            )
            self._accept(session, winner, resource)
            session.flush()
            return winner

    def settle(self, rid: int, bid_id: int, loaner_uid: int, renter_uid: int, amount: float):
        """
        Transfer ``amount`` from renter to loaner and end the compute phase.

        Raises:
            Internal: If the bid is not running or the renter cannot pay.
        """
        with self.transaction() as session:
            bid = session.query(Bid).filter(Bid.bid == bid_id).with_for_update().first()
            if bid is None or bid.status != BidStatus.ACCEPTED.value or not bid.computing:
                raise Internal(f"bid {bid_id} is not computing and cannot be settled")

            wallets = self._lock_wallets(session, [loaner_uid, renter_uid])
            renter, loaner = wallets.get(renter_uid), wallets.get(loaner_uid)
            if renter is None or loaner is None:
                raise Internal(f"missing wallet while settling bid {bid_id}")
            if renter.credits < amount:
                raise Internal(
                    f"escrow violated: user {renter_uid} holds {renter.credits:.2f}, owes {amount:.2f}"
                )
            renter.credits -= amount
            loaner.credits += amount

            bid.computing = False
            resource = self._lock_resource(session, rid)
            if resource is not None:
                resource.computing = False
            logger.info(
                "Settled bid %s: %.2f credits from user %s to user %s", bid_id, amount, renter_uid, loaner_uid
            )

    def get_bid(self, bid_id: int) -> Bid:
        with self.transaction() as session:
            bid = session.get(Bid, bid_id)
            if bid is None:
                raise NotFound("bid not found")
            return bid

    def bid_owner(self, bid_id: int) -> int:
        return self.get_bid(bid_id).uid

    def list_user_bids(self, uid: int) -> List[Bid]:
        with self.transaction() as session:
            return session.query(Bid).filter(Bid.uid == uid).order_by(Bid.rid, Bid.bid).all()

    def list_computing_bids(self) -> List[Tuple[Bid, int]]:
        """Running bids paired with the uid of the resource owner."""
        with self.transaction() as session:
            rows = (
                session.query(Bid, Resource.uid)
                .join(Resource, Resource.rid == Bid.rid)
                .filter(Bid.status == BidStatus.ACCEPTED.value, Bid.computing.is_(True))
                .all()
            )
            return [(bid, loaner_uid) for bid, loaner_uid in rows]

    def delete_bid(self, bid_id: int) -> Bid:
        with self.transaction() as session:
            bid = session.query(Bid).filter(Bid.bid == bid_id).with_for_update().first()
            if bid is None:
                raise NotFound("bid not found")
            if bid.computing:
                raise PreconditionFailed("bid is currently computing")
            session.delete(bid)
            return bid

    def user_has_bid_on(self, uid: int, rid: int) -> bool:
        with self.transaction() as session:
            return session.query(Bid).filter(Bid.uid == uid, Bid.rid == rid).count() > 0

    # Wallets and aggregates

    def add_credits(self, uid: int, amount: float) -> float:
        with self.transaction() as session:
            wallet = self._lock_wallets(session, [uid]).get(uid)
            if wallet is None:
                raise NotFound("wallet not found")
            wallet.credits += amount
            return wallet.credits

    def sum_credits(self, uid: int) -> float:
        with self.transaction() as session:
            wallet = session.get(Wallet, uid)
            if wallet is None:
                raise NotFound("wallet not found")
            return wallet.credits

    def count_resources(self, uid: int) -> int:
        with self.transaction() as session:
            return session.query(Resource).filter(Resource.uid == uid).count()

    def count_active_resources(self, uid: int) -> int:
        with self.transaction() as session:
            return session.query(Resource).filter(Resource.uid == uid, Resource.computing.is_(True)).count()

    def sum_pending_bid_commitment(self, uid: int) -> float:
        with self.transaction() as session:
            total = (
                session.query(func.coalesce(func.sum(Bid.amount * Bid.duration), 0.0))
                .filter(Bid.uid == uid, Bid.status == BidStatus.PENDING.value)
                .scalar()
            )
            return float(total or 0.0)

    def count_running_accepted_bids(self, uid: int) -> int:
        with self.transaction() as session:
            return (
                session.query(Bid)
                .filter(
                    Bid.uid == uid,
                    Bid.status == BidStatus.ACCEPTED.value,
                    Bid.computing.is_(True),
                )
                .count()
            )

    def escrow_commitment(self, uid: int) -> float:
        """Credits of a user held by pending and running bids."""
        with self.transaction() as session:
            return self._commitment(session, uid)

    def user_info(self, uid: int) -> dict:
        return {
            "credits": self.sum_credits(uid),
            "resources": self.count_resources(uid),
            "active_resources": self.count_active_resources(uid),
            "pending_bids": self.sum_pending_bid_commitment(uid),
            "active_loans": self.count_running_accepted_bids(uid),
        }


def get_store(request: Request) -> Store:
    """Dependency returning the store attached to the application."""
    return request.app.state.store
