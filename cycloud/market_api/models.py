# pylint: disable=too-few-public-methods
"""SQLAlchemy models for the market database schema."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BidStatus(str, Enum):
    """Lifecycle of a bid."""

    PENDING = "pending"
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def outbids(amount: float, duration: int, other_amount: float, other_duration: int) -> bool:
    """True if a bid strictly beats another: higher amount, ties broken by longer duration."""
    return (amount, duration) > (other_amount, other_duration)


class User(Base):
    """A marketplace user. Username and password are stored hashed."""

    __tablename__ = "users"

    uid = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False)
    password = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Wallet(Base):
    """Credit balance of a user."""

    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_wallets_credits"),)

    uid = Column(Integer, ForeignKey("users.uid"), primary_key=True)
    credits = Column(Float, nullable=False, default=0.0)


class Token(Base):
    """A session token issued to a user."""

    __tablename__ = "tokens"

    uid = Column(Integer, ForeignKey("users.uid"), primary_key=True)
    token = Column(String, primary_key=True, index=True)


class Resource(Base):
    """A machine a loaner is willing to rent out."""

    __tablename__ = "resources"
    __table_args__ = (
        CheckConstraint("cost_per_minute >= 0", name="ck_resources_cost"),
    )

    rid = Column(Integer, primary_key=True, index=True)
    uid = Column(Integer, ForeignKey("users.uid"), nullable=False, index=True)
    cpu_cores = Column(Integer, nullable=False)
    memory = Column(Integer, nullable=False)  # GB
    storage = Column(Integer, nullable=False)  # GB
    gpu = Column(String, nullable=False)
    bandwidth = Column(Integer, nullable=False)  # Mbps
    cost_per_minute = Column(Float, nullable=False)
    available = Column(Boolean, nullable=False, default=False)
    computing = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Bid(Base):
    """An offer by a renter to use a resource for a number of minutes."""

    __tablename__ = "bids"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_bids_amount"),
        CheckConstraint("duration >= 0", name="ck_bids_duration"),
    )

    bid = Column(Integer, primary_key=True, index=True)
    uid = Column(Integer, ForeignKey("users.uid"), nullable=False, index=True)
    rid = Column(Integer, ForeignKey("resources.rid"), nullable=False, index=True)
    amount = Column(Float, nullable=False)  # credits per minute
    duration = Column(Integer, nullable=False)  # minutes
    status = Column(String, nullable=False, default=BidStatus.PENDING.value)
    computing = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)

    @property
    def commitment(self) -> float:
        """Credits this bid holds in escrow."""
        return self.amount * self.duration
