"""
E-Waste Tracker Database Schemas

Define MongoDB collection schemas using Pydantic models. Each model name maps to a
collection with the lowercase class name.

Examples:
- User -> "user"
- Ewaste -> "ewaste"
- Campaign -> "campaign"
"""

from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

from database import as_utc


Role = Literal["admin", "user", "vendor"]
Category = Literal["computers", "mobile_devices", "lab_equipment", "batteries", "accessories", "other"]
WasteType = Literal["recyclable", "reusable", "hazardous"]
ItemStatus = Literal["reported", "assessed", "scheduled", "collected", "recycled", "disposed"]
CampaignType = Literal["education", "collection_drive", "challenge", "workshop"]
CampaignStatus = Literal["upcoming", "active", "completed", "cancelled"]

ROLES = ("admin", "user", "vendor")
CATEGORIES = ("computers", "mobile_devices", "lab_equipment", "batteries", "accessories", "other")
WASTE_TYPES = ("recyclable", "reusable", "hazardous")
ITEM_STATUSES = ("reported", "assessed", "scheduled", "collected", "recycled", "disposed")
CAMPAIGN_TYPES = ("education", "collection_drive", "challenge", "workshop")
CAMPAIGN_STATUSES = ("upcoming", "active", "completed", "cancelled")


class User(BaseModel):
    """
    Campus accounts
    Collection: "user"
    """
    username: str = Field(..., min_length=1, max_length=80, description="Unique display name")
    email: EmailStr = Field(..., description="Unique email address")
    password: str = Field(..., description="Password hash, never the plain text")
    role: Role = Field("user", description="Account role")
    department: str = Field(..., min_length=1, description="Campus department")
    greenScore: int = Field(0, ge=0, description="Gamification point balance")
    totalContribution: float = Field(0, ge=0, description="Reported e-waste weight in kg")
    creditedItems: List[str] = Field(default_factory=list, description="Items already credited to this user")
    awardedCampaigns: List[str] = Field(default_factory=list, description="Campaigns already awarded to this user")


class Location(BaseModel):
    building: Optional[str] = None
    floor: Optional[str] = None
    room: Optional[str] = None


class EnvironmentalImpact(BaseModel):
    co2Saved: Optional[float] = Field(None, description="kg of CO2 saved")
    landfillWasteReduced: Optional[float] = Field(None, description="kg diverted from landfill")


class Ewaste(BaseModel):
    """
    Reported e-waste items
    Collection: "ewaste"
    """
    itemId: str = Field(..., description="Globally unique item code")
    name: str = Field(..., min_length=1, max_length=200)
    category: Category
    type: WasteType
    description: str = Field(..., min_length=1, max_length=2000)
    department: str = Field(..., min_length=1)
    reportedBy: str = Field(..., description="Reporting user id as string")
    status: ItemStatus = Field("reported", description="Lifecycle status")
    age: float = Field(..., ge=0, description="Age in years")
    weight: float = Field(..., gt=0, description="Weight in kg")
    qrCode: str = Field(..., description="PNG data URL of the item code")
    location: Location = Field(default_factory=Location)
    scheduledPickup: Optional[datetime] = None
    vendor: Optional[str] = Field(None, description="Vendor user id as string")
    environmentalImpact: Optional[EnvironmentalImpact] = None
    scoreCredited: bool = Field(False, description="Reporter credit applied")
    statusHistory: List[dict] = Field(default_factory=list, description="Recorded status changes")

    @field_validator("scheduledPickup")
    @classmethod
    def normalize_pickup(cls, v):
        return as_utc(v)


class Rewards(BaseModel):
    greenScorePoints: int = Field(0, ge=0)
    certificates: bool = False
    prizes: Optional[str] = None


class Participant(BaseModel):
    user: str = Field(..., description="Participant user id as string")
    joinedAt: datetime
    contribution: float = 0


class Campaign(BaseModel):
    """
    Awareness and collection campaigns created by admins
    Collection: "campaign"
    """
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    type: CampaignType
    startDate: datetime
    endDate: datetime
    targetAudience: List[str] = Field(default_factory=lambda: ["students", "faculty", "staff"])
    maxParticipants: Optional[int] = Field(None, ge=1, description="Optional roster cap")
    rewards: Rewards = Field(default_factory=Rewards)
    status: CampaignStatus = Field("upcoming")
    createdBy: str = Field(..., description="Creating admin id as string")
    participants: List[Participant] = Field(default_factory=list)
    awardedAt: Optional[datetime] = Field(None, description="Set once participants have been awarded")

    @field_validator("startDate", "endDate")
    @classmethod
    def normalize_dates(cls, v):
        return as_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.endDate < self.startDate:
            raise ValueError("endDate must not be before startDate")
        return self
