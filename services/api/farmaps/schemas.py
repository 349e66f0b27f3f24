"""
Pydantic schemas for hydrated profiles, pins and the network response.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field

Mode = Literal["followers", "following", "both"]


class Profile(BaseModel):
    """A hydrated fid. score / coordinates stay None when the record lacks them."""
    fid: int
    username: str
    display_name: Optional[str] = None
    pfp_url: Optional[str] = None
    score: Optional[float] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    city: Optional[str] = None

    @property
    def located(self) -> bool:
        return self.lat is not None and self.lng is not None


class Pin(BaseModel):
    lat: float
    lng: float
    city: str
    count: int
    bucket: str
    users: list[Profile]


class NetworkCounts(BaseModel):
    followers: int = 0
    following: int = 0
    candidates: int = 0
    hydrated: int = 0
    missing_score: int = 0
    below_score: int = 0
    missing_location: int = 0
    included: int = 0
    pins: int = 0


class Legend(BaseModel):
    b1: int = 0
    b2: int = 0
    b4: int = 0
    b8: int = 0
    pins: int = 0
    users: int = 0


class Bounds(BaseModel):
    sw: tuple[float, float]
    ne: tuple[float, float]


class NetworkResponse(BaseModel):
    fid: int
    mode: Mode
    min_score: float
    counts: NetworkCounts
    legend: Legend
    bounds: Optional[Bounds] = None
    points: list[Pin] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
