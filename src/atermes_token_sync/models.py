from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class Credential(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    password: str = Field(repr=False)
    totp_seed: str = Field(repr=False)

    last_token: Optional[str] = Field(default=None, repr=False)
    last_token_set_at: Optional[datetime] = None


class TenantBinding(BaseModel):
    """
    One enabled environment row: a tenant deployment plus the credential used to log into it.
    """

    model_config = ConfigDict(frozen=True)

    tenant: str
    credential_id: str
    enabled: bool = True
    credential: Credential


class AuthData(BaseModel):
    """
    Immutable result of one login: the captured bearer token (if any) plus the session cookies.
    """

    model_config = ConfigDict(frozen=True)

    token: Optional[str] = Field(default=None, repr=False)
    cookies: dict[str, str] = Field(default_factory=dict, repr=False)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    token_source: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return bool(self.token)


class CredentialFailure(BaseModel):
    email: str
    tenant: str
    reason: str


class RunSummary(BaseModel):
    run_id: Optional[int] = None
    environments: int = 0
    credentials: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failed: list[CredentialFailure] = Field(default_factory=list)
    persistence_failures: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.persistence_failures

    def message(self) -> str:
        return f"{len(self.succeeded)}/{self.credentials} credentials ok"
