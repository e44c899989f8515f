from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated back-office user from the admin JWT.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"

    @property
    def sub(self) -> str:
        return self.user_id

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "service_role")
