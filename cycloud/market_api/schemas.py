"""Pydantic schemas for the requests and responses of the market API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema exchanged with clients in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class Credentials(BaseModel):
    """Schema for logging in (or registering on first login)."""

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    token: str


class MessageOut(BaseModel):
    message: str


class ResourceSpec(CamelModel):
    """Schema for publishing a machine for rent."""

    cpu_cores: int = Field(ge=1)
    memory: int = Field(ge=0, description="Memory in GB")
    storage: int = Field(ge=0, description="Storage in GB")
    gpu: str = ""
    bandwidth: int = Field(ge=0, description="Bandwidth in Mbps")
    cost_per_minute: float = Field(ge=0)


class ResourceOut(ResourceSpec):
    """Schema for returning a resource."""

    rid: int
    available: bool
    computing: bool
    created_at: Optional[datetime] = None


class ResourceCreated(CamelModel):
    rid: int
    message: str = "Resource created successfully"


class AvailabilityOut(CamelModel):
    rid: int
    available: bool
    message: str = "Availability changed"


class BidIn(CamelModel):
    """Schema for placing a bid: credits per minute for a number of minutes."""

    rid: int
    amount: float
    duration: int


class BidOut(CamelModel):
    bid: int
    rid: int
    amount: float
    duration: int
    status: str
    computing: bool
    created_at: Optional[datetime] = None


class UserInfo(CamelModel):
    credits: float
    resources: int
    active_resources: int
    pending_bids: float
    active_loans: int


class CreditsIn(BaseModel):
    amount: float


class CreditsOut(CamelModel):
    credits: float
