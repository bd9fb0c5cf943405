"""Request and response models for the CashHeros API."""

from pydantic import BaseModel, ConfigDict, Field

from cashheros.repository import Account, Role

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterRequest(BaseModel):
    """New account with email and password."""

    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=6, max_length=128)
    first_name: str | None = Field(None, alias="firstName", min_length=1, max_length=100)
    last_name: str | None = Field(None, alias="lastName", min_length=1, max_length=100)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class LoginRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    model_config = ConfigDict(populate_by_name=True)


class GoogleTokenRequest(BaseModel):
    """Google ID token obtained by the page."""

    id_token: str = Field(..., alias="idToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class GoogleCodeRequest(BaseModel):
    """Authorization code to exchange with Google."""

    code: str = Field(..., min_length=1)
    redirect_uri: str | None = Field(None, alias="redirectUri")

    model_config = ConfigDict(populate_by_name=True)


class FacebookTokenRequest(BaseModel):
    access_token: str = Field(..., alias="accessToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ProfileUpdate(BaseModel):
    """Partial profile update; omitted fields are left unchanged."""

    first_name: str | None = Field(None, alias="firstName", min_length=1, max_length=100)
    last_name: str | None = Field(None, alias="lastName", min_length=1, max_length=100)
    profile_picture: str | None = Field(None, alias="profilePicture", max_length=2048)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RoleChange(BaseModel):
    role: Role


class FeedbackRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=5000)
    email: str | None = Field(None, pattern=EMAIL_PATTERN, max_length=254)

    model_config = ConfigDict(str_strip_whitespace=True)


class UserOut(BaseModel):
    """Public view of an account."""

    id: str
    email: str
    first_name: str | None = Field(None, alias="firstName")
    last_name: str | None = Field(None, alias="lastName")
    role: Role
    verified: bool
    profile_picture: str | None = Field(None, alias="profilePicture")

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    @classmethod
    def from_account(cls, account: Account) -> "UserOut":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role,
            verified=account.verified,
            profile_picture=account.profile_picture,
        )


class AuthPayload(BaseModel):
    """Access token plus the signed-in user."""

    token: str
    expires_at: int = Field(..., alias="expiresAt")
    user: UserOut

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)
