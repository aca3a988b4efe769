"""Pydantic models for validating Headscale API responses.

Headscale's REST API returns camelCase field names and ISO 8601 strings
for timestamps. Timestamps are kept as strings; Headscale emits
nanosecond precision.
"""

from typing import List, Optional, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class HeadscaleModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "ignore"


class HeadscaleUser(HeadscaleModel):
    id: str
    name: str
    created_at: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None


class HeadscaleNode(HeadscaleModel):
    id: str
    machine_key: Optional[str] = None
    node_key: Optional[str] = None
    ip_addresses: List[str] = Field(default_factory=list)
    name: str
    user: HeadscaleUser
    last_seen: Optional[str] = None
    expiry: Optional[str] = None
    forced_tags: List[str] = Field(default_factory=list)
    valid_tags: List[str] = Field(default_factory=list)
    given_name: str = ""
    online: bool = False
    register_method: str = "REGISTER_METHOD_UNSPECIFIED"
    created_at: Optional[str] = None
    # Headscale 0.27+ reports routes on the node
    available_routes: List[str] = Field(default_factory=list)
    approved_routes: List[str] = Field(default_factory=list)
    subnet_routes: List[str] = Field(default_factory=list)


class HeadscaleRoute(HeadscaleModel):
    id: str
    node: HeadscaleNode
    prefix: str
    advertised: bool = False
    enabled: bool = False
    is_primary: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None


class HeadscalePreAuthKey(HeadscaleModel):
    id: str
    key: str
    # Older releases return the user name, newer ones the user object
    user: Union[HeadscaleUser, str, None] = None
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    expiration: Optional[str] = None
    created_at: Optional[str] = None
    acl_tags: List[str] = Field(default_factory=list)


class HeadscaleApiKey(HeadscaleModel):
    id: str
    prefix: str
    expiration: Optional[str] = None
    created_at: Optional[str] = None
    last_seen: Optional[str] = None


class ListNodesResponse(HeadscaleModel):
    nodes: List[HeadscaleNode] = Field(default_factory=list)


class NodeResponse(HeadscaleModel):
    node: HeadscaleNode


class ListUsersResponse(HeadscaleModel):
    users: List[HeadscaleUser] = Field(default_factory=list)


class UserResponse(HeadscaleModel):
    user: HeadscaleUser


class ListRoutesResponse(HeadscaleModel):
    routes: List[HeadscaleRoute] = Field(default_factory=list)


class RouteResponse(HeadscaleModel):
    route: HeadscaleRoute


class ListPreAuthKeysResponse(HeadscaleModel):
    pre_auth_keys: List[HeadscalePreAuthKey] = Field(default_factory=list)


class PreAuthKeyResponse(HeadscaleModel):
    pre_auth_key: HeadscalePreAuthKey


class PolicyResponse(HeadscaleModel):
    policy: str
    updated_at: Optional[str] = None


class ListApiKeysResponse(HeadscaleModel):
    api_keys: List[HeadscaleApiKey] = Field(default_factory=list)


class CreateApiKeyResponse(HeadscaleModel):
    api_key: str


class DNSConfiguration(HeadscaleModel):
    nameservers: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    magic_dns: bool = Field(False, alias="magicDNS")
    base_domain: Optional[str] = None


class DNSResponse(HeadscaleModel):
    dns: DNSConfiguration = Field(default_factory=DNSConfiguration)
