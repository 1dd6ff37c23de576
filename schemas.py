"""
Request models for the UMKM directory API

Rows live in Supabase tables; these Pydantic models only describe what clients
may send. Column names follow the tables:
- User -> "User"
- Categories -> "Categories"
- Umkm -> "Umkm"
- Comments -> "Comments"
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, HttpUrl, StrictInt, confloat, field_validator, model_validator

Role = Literal["admin", "user"]


def normalize_role(value: Optional[str]) -> Role:
    """Map any stored casing of a role ("Admin", "USER", None) to the canonical value."""
    return "admin" if str(value or "user").lower() == "admin" else "user"


def storage_role(role: Role, case: str) -> str:
    return role.capitalize() if case == "capitalized" else role


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=32)
    name: str = Field(..., min_length=1, max_length=64)
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=8)

    @model_validator(mode="after")
    def check_identifier(self):
        if not self.username and not self.email:
            raise ValueError("username or email required")
        return self


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)


class UmkmIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    location: str = Field(..., min_length=1, max_length=128)
    description: str = Field("", max_length=1000)
    categories: int = Field(..., gt=0, description="Categories.IDCategories")
    photo: Optional[HttpUrl] = None


class CommentIn(BaseModel):
    content: str = Field(..., min_length=1)
    rating: Union[StrictInt, confloat(strict=True, allow_inf_nan=False)]


class RoleUpdate(BaseModel):
    role: Role

    @field_validator("role", mode="before")
    @classmethod
    def lower_role(cls, v):
        return v.lower() if isinstance(v, str) else v
