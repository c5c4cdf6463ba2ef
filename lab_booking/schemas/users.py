from typing import Literal

from pydantic import BaseModel, ConfigDict, StrictBool


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    email: str
    password: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


class UserStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isActive: StrictBool


class UserRoleUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: Literal["admin", "user"]
