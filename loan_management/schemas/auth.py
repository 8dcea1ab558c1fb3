from pydantic import BaseModel, ConfigDict


class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    password: str | None = None


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str


class SetPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str
    password: str
