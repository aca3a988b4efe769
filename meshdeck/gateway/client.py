"""Headscale REST API client.

Holds the upstream API key; nothing it returns contains it. Every operation
returns a ``GatewayResult`` so callers branch on ``result.ok`` instead of
catching transport exceptions.
"""

import logging
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from fastapi import Request
from pydantic import BaseModel, ValidationError

from meshdeck.core.config import settings
from meshdeck.gateway.errors import GatewayError, GatewayErrorKind, GatewayResult
from meshdeck.gateway.schemas import (
    CreateApiKeyResponse,
    DNSResponse,
    ListApiKeysResponse,
    ListNodesResponse,
    ListPreAuthKeysResponse,
    ListRoutesResponse,
    ListUsersResponse,
    NodeResponse,
    PolicyResponse,
    PreAuthKeyResponse,
    RouteResponse,
    UserResponse,
)

logger = logging.getLogger("meshdeck.gateway")

M = TypeVar("M", bound=BaseModel)


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class HeadscaleClient:
    """Async client for the Headscale ``/api/v1`` surface.

    No retries: a failed call is reported once and the caller decides.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = (base_url or settings.HEADSCALE_URL).rstrip("/")
        api_key = api_key if api_key is not None else settings.HEADSCALE_API_KEY
        if not base_url or not api_key:
            raise ValueError("HEADSCALE_URL and HEADSCALE_API_KEY must be set")

        self.base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=f"{base_url}/api/v1",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=settings.HEADSCALE_TIMEOUT_SECONDS if timeout is None else timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        model: Optional[Type[M]] = None,
    ) -> GatewayResult:
        logger.debug("Headscale API request %s %s", method, path)
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException:
            logger.error("Headscale API request timed out: %s %s", method, path)
            return GatewayResult.failure(GatewayError(
                kind=GatewayErrorKind.TIMEOUT, message="Request timed out", code="TIMEOUT",
            ))
        except httpx.TransportError as e:
            logger.error("Headscale API request failed: %s %s: %s", method, path, type(e).__name__)
            return GatewayResult.failure(GatewayError(
                kind=GatewayErrorKind.UNREACHABLE,
                message="Failed to connect to Headscale",
                code="CONNECTION_ERROR",
            ))
        except httpx.RequestError as e:
            # Undecodable body, redirect loop and the like
            logger.error("Headscale API request failed: %s %s: %s", method, path, type(e).__name__)
            return GatewayResult.failure(GatewayError(
                kind=GatewayErrorKind.FAILED,
                message="Invalid response from Headscale API",
                code="REQUEST_ERROR",
            ))

        if response.is_error:
            message = f"Headscale API error: {response.status_code}"
            code = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message = body.get("message") or message
                code = str(body["code"]) if body.get("code") is not None else None
            logger.error(
                "Headscale API error: %s %s status=%s code=%s: %s",
                method, path, response.status_code, code, message,
            )
            return GatewayResult.failure(GatewayError.from_status(response.status_code, message, code))

        try:
            data = response.json() if response.content else {}
            value = model.model_validate(data) if model is not None else data
        except (ValueError, ValidationError) as e:
            # pydantic's ValidationError subclasses ValueError; both mean a bad body
            logger.error("Headscale API response validation failed: %s %s: %s", method, path, e)
            return GatewayResult.failure(GatewayError(
                kind=GatewayErrorKind.FAILED,
                message="Invalid response from Headscale API",
                status_code=response.status_code,
                code="VALIDATION_ERROR",
            ))
        return GatewayResult.success(value)

    # Nodes

    async def list_nodes(self) -> GatewayResult:
        return await self._request("GET", "/node", model=ListNodesResponse)

    async def get_node(self, node_id: str) -> GatewayResult:
        return await self._request("GET", f"/node/{_segment(node_id)}", model=NodeResponse)

    async def rename_node(self, node_id: str, new_name: str) -> GatewayResult:
        return await self._request(
            "POST", f"/node/{_segment(node_id)}/rename/{_segment(new_name)}", model=NodeResponse,
        )

    async def set_node_tags(self, node_id: str, tags: List[str]) -> GatewayResult:
        return await self._request(
            "POST", f"/node/{_segment(node_id)}/tags", json={"tags": tags}, model=NodeResponse,
        )

    async def delete_node(self, node_id: str) -> GatewayResult:
        return await self._request("DELETE", f"/node/{_segment(node_id)}")

    async def expire_node(self, node_id: str) -> GatewayResult:
        """Force the node to re-authenticate."""
        return await self._request("POST", f"/node/{_segment(node_id)}/expire", model=NodeResponse)

    async def move_node(self, node_id: str, new_user: str) -> GatewayResult:
        return await self._request(
            "POST", f"/node/{_segment(node_id)}/user", params={"user": new_user}, model=NodeResponse,
        )

    # Users

    async def list_users(self) -> GatewayResult:
        return await self._request("GET", "/user", model=ListUsersResponse)

    async def get_user(self, name: str) -> GatewayResult:
        return await self._request("GET", f"/user/{_segment(name)}", model=UserResponse)

    async def create_user(self, name: str) -> GatewayResult:
        return await self._request("POST", "/user", json={"name": name}, model=UserResponse)

    async def delete_user(self, name: str) -> GatewayResult:
        return await self._request("DELETE", f"/user/{_segment(name)}")

    async def rename_user(self, old_name: str, new_name: str) -> GatewayResult:
        return await self._request(
            "POST", f"/user/{_segment(old_name)}/rename/{_segment(new_name)}", model=UserResponse,
        )

    # Routes

    async def list_routes(self) -> GatewayResult:
        return await self._request("GET", "/routes", model=ListRoutesResponse)

    async def enable_route(self, route_id: str) -> GatewayResult:
        return await self._request("POST", f"/routes/{_segment(route_id)}/enable", model=RouteResponse)

    async def disable_route(self, route_id: str) -> GatewayResult:
        return await self._request("POST", f"/routes/{_segment(route_id)}/disable", model=RouteResponse)

    async def delete_route(self, route_id: str) -> GatewayResult:
        return await self._request("DELETE", f"/routes/{_segment(route_id)}")

    # Pre-auth keys

    async def list_preauth_keys(self, user: str) -> GatewayResult:
        return await self._request(
            "GET", "/preauthkey", params={"user": user}, model=ListPreAuthKeysResponse,
        )

    async def create_preauth_key(
        self,
        user: str,
        reusable: bool = False,
        ephemeral: bool = False,
        expiration: Optional[str] = None,
        acl_tags: Optional[List[str]] = None,
    ) -> GatewayResult:
        body: Dict[str, Any] = {"user": user, "reusable": reusable, "ephemeral": ephemeral}
        if expiration:
            body["expiration"] = expiration
        if acl_tags:
            body["aclTags"] = acl_tags
        return await self._request("POST", "/preauthkey", json=body, model=PreAuthKeyResponse)

    async def expire_preauth_key(self, user: str, key: str) -> GatewayResult:
        return await self._request("POST", "/preauthkey/expire", json={"user": user, "key": key})

    # Policy

    async def get_policy(self) -> GatewayResult:
        return await self._request("GET", "/policy", model=PolicyResponse)

    async def set_policy(self, policy: str) -> GatewayResult:
        return await self._request("PUT", "/policy", json={"policy": policy}, model=PolicyResponse)

    # API keys

    async def list_api_keys(self) -> GatewayResult:
        return await self._request("GET", "/apikey", model=ListApiKeysResponse)

    async def create_api_key(self, expiration: Optional[str] = None) -> GatewayResult:
        body = {"expiration": expiration} if expiration else {}
        return await self._request("POST", "/apikey", json=body, model=CreateApiKeyResponse)

    async def expire_api_key(self, prefix: str) -> GatewayResult:
        return await self._request("POST", "/apikey/expire", json={"prefix": prefix})

    async def delete_api_key(self, prefix: str) -> GatewayResult:
        return await self._request("DELETE", f"/apikey/{_segment(prefix)}")

    # DNS

    async def get_dns(self) -> GatewayResult:
        return await self._request("GET", "/dns", model=DNSResponse)

    async def set_dns(self, config: Dict[str, Any]) -> GatewayResult:
        return await self._request("PUT", "/dns", json=config, model=DNSResponse)


def get_headscale(request: Request) -> HeadscaleClient:
    """FastAPI dependency returning the client opened at startup."""
    return request.app.state.headscale
