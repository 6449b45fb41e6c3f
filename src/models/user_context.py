"""Current user identity as handed to the core by the auth layer."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from src.utils.errors import BellDeskError


class Role(str, Enum):
    """User roles."""
    BELLMAN = "bellman"
    BELL_CAPTAIN = "bell_captain"
    PHONE_OPERATOR = "phone_operator"
    MANAGER = "manager"
    FRONT_DESK = "front_desk"
    ADMIN = "admin"
    OPERATOR = "operator"
    BELL_STAFF = "bell_staff"


class UserContext(BaseModel):
    """Identity, role and hotel of the signed-in user."""
    user_id: str = Field(..., description="Auth user ID")
    hotel_id: Optional[str] = Field(None, description="Hotel (tenant) ID")
    role: Role = Field(default=Role.BELLMAN)
    email: Optional[str] = None
    full_name: str = Field(default="User")
    is_super_admin: bool = False

    def require_hotel(self) -> str:
        """Return the hotel ID or raise if the user has none."""
        if not self.hotel_id:
            raise BellDeskError(
                f"No hotel associated with user {self.user_id}",
                user_message="No hotel associated with your account",
            )
        return self.hotel_id

    def can_access_hotel(self, hotel_id: str) -> bool:
        if self.is_super_admin:
            return True
        return self.hotel_id == hotel_id
