#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Async Docker Engine API client talking to the daemon over its unix socket
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from instance_manager.config.config import DOCKER_API_TIMEOUT, DOCKER_SOCKET
from instance_manager.executors.docker.errors import (
    DaemonUnreachableError,
    DockerError,
    NotFoundError,
    RuntimeApiError,
)
from shared.logger import setup_logger

logger = setup_logger(__name__)

# Host part is ignored when talking over a unix socket
DOCKER_BASE_URL = "http://docker"


class DockerClient:
    """Thin wrapper over the Docker Engine REST API"""

    def __init__(
        self,
        socket_path: str = DOCKER_SOCKET,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DOCKER_API_TIMEOUT,
    ):
        self.socket_path = socket_path
        if transport is None:
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
        self._client = httpx.AsyncClient(
            transport=transport, base_url=DOCKER_BASE_URL, timeout=timeout
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, request: httpx.Request, stream: bool = False) -> httpx.Response:
        try:
            return await self._client.send(request, stream=stream)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise DaemonUnreachableError(
                f"Cannot connect to Docker at {self.socket_path}. Is Docker running? ({e})"
            ) from e
        except httpx.TransportError as e:
            raise DockerError(f"Docker request {request.method} {request.url.path} failed: {e}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("message", response.text)
        except (ValueError, AttributeError):
            return response.text

    def _check(self, response: httpx.Response, allowed: tuple = ()) -> httpx.Response:
        if response.status_code < 300 or response.status_code in allowed:
            return response
        message = self._error_message(response)
        if response.status_code == 404:
            raise NotFoundError(message)
        raise RuntimeApiError(response.status_code, message)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        allowed: tuple = (),
    ) -> httpx.Response:
        request = self._client.build_request(method, path, params=params, json=json_body)
        response = await self._send(request)
        return self._check(response, allowed)

    async def ping(self) -> None:
        """Raise DaemonUnreachableError unless the daemon answers /_ping"""
        try:
            await self._request("GET", "/_ping")
        except RuntimeApiError as e:
            raise DaemonUnreachableError(f"Docker connection failed: {e.message}") from e

    async def info(self) -> Dict[str, Any]:
        response = await self._request("GET", "/info")
        return response.json()

    async def image_exists(self, name: str) -> bool:
        try:
            await self._request("GET", f"/images/{name}/json")
            return True
        except NotFoundError:
            return False

    async def create_container(self, name: str, config: Dict[str, Any]) -> str:
        response = await self._request(
            "POST", "/containers/create", params={"name": name}, json_body=config
        )
        return response.json()["Id"]

    # 304 means the container is already in the requested state
    async def start_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/start", allowed=(304,))

    async def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        params = {"t": timeout} if timeout is not None else None
        await self._request(
            "POST", f"/containers/{container_id}/stop", params=params, allowed=(304,)
        )

    async def restart_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/restart")

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": "true" if force else "false"},
        )

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/containers/{container_id}/json")
        return response.json()

    async def list_containers(
        self, all: bool = True, filters: Optional[Dict[str, List[str]]] = None
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"all": "true" if all else "false"}
        if filters:
            params["filters"] = json.dumps(filters)
        response = await self._request("GET", "/containers/json", params=params)
        return response.json()

    async def container_logs(self, container_id: str, tail: int = 100) -> bytes:
        """Fetch raw (still multiplexed) log bytes"""
        response = await self._request(
            "GET",
            f"/containers/{container_id}/logs",
            params={"stdout": "true", "stderr": "true", "tail": str(tail)},
        )
        return response.content

    async def open_log_stream(self, container_id: str, tail: int = 50) -> httpx.Response:
        """
        Open a follow-mode log connection.

        The returned response is still streaming; the caller owns it and must
        call aclose() to release the connection.
        """
        request = self._client.build_request(
            "GET",
            f"/containers/{container_id}/logs",
            params={
                "stdout": "true",
                "stderr": "true",
                "follow": "true",
                "tail": str(tail),
            },
            timeout=httpx.Timeout(DOCKER_API_TIMEOUT, read=None),
        )
        response = await self._send(request, stream=True)
        if response.status_code >= 300:
            await response.aread()
            await response.aclose()
            self._check(response)
        return response

    async def container_stats(self, container_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET", f"/containers/{container_id}/stats", params={"stream": "false"}
        )
        return response.json()


_docker_client: Optional[DockerClient] = None


def get_docker_client() -> DockerClient:
    """Get the global DockerClient instance"""
    global _docker_client
    if _docker_client is None:
        _docker_client = DockerClient()
    return _docker_client
