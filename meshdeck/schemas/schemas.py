"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal


# ---- Auth ----
class IdentityLoginRequest(BaseModel):
    id_token: str = Field(..., min_length=1)

class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


# ---- Nodes ----
def _check_tags(tags):
    if tags is not None:
        for tag in tags:
            if not tag.startswith("tag:"):
                raise ValueError(f"Tag must start with \"tag:\": {tag}")
    return tags


class NodeUpdateRequest(BaseModel):
    """Any combination of changes; each one is applied and audited separately."""
    given_name: Optional[str] = Field(None, min_length=1, max_length=253)
    tags: Optional[List[str]] = None
    user: Optional[str] = Field(None, min_length=1)
    expire: Optional[bool] = None

    @field_validator("tags")
    @classmethod
    def tags_prefixed(cls, v):
        return _check_tags(v)

    def has_changes(self) -> bool:
        return bool(self.given_name or self.tags is not None or self.user or self.expire)


class NodeBulkRequest(BaseModel):
    action: Literal["delete", "expire", "move", "tags"]
    node_ids: List[str] = Field(..., min_length=1, alias="nodeIds")
    new_user: Optional[str] = Field(None, min_length=1, alias="newUser")
    tags: Optional[List[str]] = None

    class Config:
        populate_by_name = True

    @field_validator("tags")
    @classmethod
    def tags_prefixed(cls, v):
        return _check_tags(v)

    @model_validator(mode="after")
    def action_fields_present(self):
        if self.action == "move" and not self.new_user:
            raise ValueError("newUser is required for move action")
        if self.action == "tags" and self.tags is None:
            raise ValueError("tags is required for tags action")
        return self


# ---- Policy ----
class PolicyUpdateRequest(BaseModel):
    policy: str


# ---- Pre-auth keys ----
class PreAuthKeyCreate(BaseModel):
    user: str = Field(..., min_length=1)
    reusable: bool = False
    ephemeral: bool = False
    expiration: Optional[str] = None
    acl_tags: Optional[List[str]] = None

class PreAuthKeyExpire(BaseModel):
    user: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)


# ---- API keys ----
class ApiKeyCreate(BaseModel):
    expiration: Optional[str] = None


# ---- Headscale users ----
class HeadscaleUserCreate(BaseModel):
    name: str = Field(..., min_length=1)

class HeadscaleUserRename(BaseModel):
    new_name: str = Field(..., min_length=1)


# ---- DNS ----
class DNSUpdateRequest(BaseModel):
    nameservers: Optional[List[str]] = None
    domains: Optional[List[str]] = None
    magic_dns: Optional[bool] = None
    base_domain: Optional[str] = None


# ---- Roles ----
class RoleAssignment(BaseModel):
    user_id: int
    role: str


# ---- Common ----
class MessageResponse(BaseModel):
    message: str
    success: bool = True
