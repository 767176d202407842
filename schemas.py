"""
Database Schemas for the Campus Quest API

Document models describe what is stored in each collection; request models
describe the JSON bodies the routes accept. Field names follow the stored
document keys, which is why user fields are capitalised.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union
from datetime import datetime


# ---------- Documents ----------

class Location(BaseModel):
    latitude: float
    longitude: float


class Submission(BaseModel):
    """
    Embedded in Quest.submissions
    A user's proof-of-completion attempt, pending creator review
    """
    userId: str = Field(..., description="Submitting user id")
    displayName: Optional[str] = Field(None, description="Name shown to the quest creator")
    imageUrl: str = Field(..., description="Public URL of the proof image")
    submittedAt: datetime
    status: str = Field("pending", description="pending | approved | rejected")


class Quest(BaseModel):
    """
    Collection: "Quests"
    A location-bound task created by one user and completable by others
    """
    name: str
    radius: float = Field(..., gt=0, description="Radius in meters")
    reward: Union[int, float] = Field(0, ge=0, description="Points awarded on approval")
    type: Optional[str] = Field(None, description="Free-form tag, e.g. landmark")
    location: Optional[Location] = None
    imageUrl: Optional[str] = None
    emoji: Optional[str] = None
    color: Optional[str] = None
    creatorId: str = Field(..., description="Always the authenticated creator")
    creatorName: Optional[str] = None
    createdAt: datetime
    active: bool = True
    acceptedBy: List[str] = Field(default_factory=list, description="Set of user ids")
    submissions: List[Submission] = Field(default_factory=list)


class CompletedQuest(BaseModel):
    """Snapshot appended to User.CompletedQuests when a submission is approved."""
    questId: str
    name: Optional[str] = None
    reward: Union[int, float] = Field(0, ge=0)
    type: Optional[str] = None
    creatorId: Optional[str] = None
    completedAt: datetime


class Customisation(BaseModel):
    borderId: Optional[str] = None
    cardColor: Optional[str] = None
    backgroundColor: Optional[str] = None


class User(BaseModel):
    """
    Collection: "Users"
    Keyed by the identity verifier's user id
    """
    Email: Optional[str] = None
    Name: Optional[str] = None
    Role: Optional[str] = None
    joinedAt: Optional[datetime] = None
    LeaderBoardPoints: Union[int, float] = Field(0, ge=0)
    Level: int = Field(0, ge=0)
    CompletedQuests: List[CompletedQuest] = Field(default_factory=list)
    Bio: str = ""
    ProfilePictureUrl: Optional[str] = None
    SpendablePoints: Union[int, float] = Field(0, ge=0)
    Experience: Union[int, float] = Field(0, ge=0)
    acceptedQuests: List[str] = Field(default_factory=list, description="Set of quest ids")
    inventoryItems: Dict[str, bool] = Field(default_factory=dict)
    customisation: Customisation = Field(default_factory=Customisation)
    currentJourneyQuestId: Optional[str] = None
    currentJourneyStop: int = Field(1, ge=1)
    completedJourneyQuests: List[str] = Field(default_factory=list)


class ProfileView(BaseModel):
    uid: str
    Name: Optional[str] = None
    LeaderBoardPoints: Union[int, float] = 0
    CompletedQuests: List[Dict[str, Any]] = Field(default_factory=list)
    acceptedQuests: List[str] = Field(default_factory=list)
    Level: int = 0
    Bio: Optional[str] = None
    profilePicture: Optional[str] = None
    Experience: Union[int, float] = 0
    SpendablePoints: Union[int, float] = 0


# ---------- Requests ----------

class QuestCreate(BaseModel):
    # Validated by QuestRepository.create
    name: Optional[str] = None
    radius: Any = None
    reward: Any = 0
    type: Optional[str] = None
    lat: Any = None
    lng: Any = None
    imageUrl: Optional[str] = None
    emoji: Optional[str] = None
    color: Optional[str] = None
    creatorName: Optional[str] = None


class SubmissionCreate(BaseModel):
    imageUrl: Optional[str] = None
    displayName: Optional[str] = None


class SubmissionRemove(BaseModel):
    index: Optional[int] = None
    userId: Optional[str] = None


class ApproveRequest(BaseModel):
    approvedUserId: Optional[str] = None


class UserCreate(BaseModel):
    userId: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None


class ProfileUpdate(BaseModel):
    uid: Optional[str] = None
    Name: Optional[str] = None
    Bio: Optional[str] = None
    ProfilePictureUrl: Optional[str] = None


class CustomisationUpdate(BaseModel):
    borderId: Optional[str] = None
    cardColor: Optional[str] = None
    backgroundColor: Optional[str] = None


class UnlockRequest(BaseModel):
    itemId: Optional[str] = None
    cost: Optional[int] = Field(None, ge=0)


class InitFieldsRequest(BaseModel):
    reset: bool = False
