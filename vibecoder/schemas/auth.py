from typing import Literal

from pydantic import EmailStr, Field

from vibecoder.schemas.common import CamelModel


class SignupIn(CamelModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(default="", max_length=80)
    last_name: str = Field(default="", max_length=80)
    role: Literal["BUYER", "SELLER"] = "BUYER"


class LoginIn(CamelModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)


class UserOut(CamelModel):
    id: str
    email: EmailStr
    first_name: str
    last_name: str
    role: str


class AuthOut(CamelModel):
    user: UserOut
    access_token: str
