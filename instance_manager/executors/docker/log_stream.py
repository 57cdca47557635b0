#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Decoding of Docker's multiplexed stdout/stderr log stream.

Each frame has an 8-byte header:
- Byte 0: stream type (0=stdin, 1=stdout, 2=stderr)
- Bytes 1-3: reserved (0)
- Bytes 4-7: payload size (big-endian uint32)

Daemons sometimes return unframed output, anything that does not look like
a frame header is passed through as raw text.
"""

import struct
from collections import deque
from typing import Deque, List

import httpx

from instance_manager.executors.docker.client import DockerClient
from instance_manager.executors.docker.constants import (
    CONTAINER_NOT_FOUND_MESSAGE,
    FRAME_HEADER_SIZE,
    MAX_FRAME_SIZE,
    STREAM_STDERR,
)
from instance_manager.executors.docker.errors import DockerError, NotFoundError
from shared.logger import setup_logger

logger = setup_logger(__name__)

_FRAME_HEADER = struct.Struct(">BxxxL")


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def encode_frame(stream_type: int, payload: bytes) -> bytes:
    """Build one multiplexed frame"""
    return _FRAME_HEADER.pack(stream_type, len(payload)) + payload


def demultiplex(buffer: bytes) -> str:
    """
    Decode a complete multiplexed buffer into text.

    A truncated trailing frame yields whatever payload is present.
    """
    parts: List[str] = []
    offset = 0

    while offset < len(buffer):
        if offset + FRAME_HEADER_SIZE > len(buffer):
            parts.append(_decode(buffer[offset:]))
            break

        stream_type, frame_size = _FRAME_HEADER.unpack_from(buffer, offset)
        if stream_type > STREAM_STDERR or frame_size > MAX_FRAME_SIZE:
            parts.append(_decode(buffer[offset:]))
            break

        frame_start = offset + FRAME_HEADER_SIZE
        frame_end = frame_start + frame_size
        content = _decode(buffer[frame_start:frame_end])
        if content.strip():
            parts.append(content)
        offset = frame_end

    return "".join(parts)


def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


class FrameDecoder:
    """Incremental decoder turning arbitrary chunks into log lines"""

    def __init__(self):
        self._pending = b""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += chunk
        lines: List[str] = []

        while len(self._pending) >= FRAME_HEADER_SIZE:
            stream_type, frame_size = _FRAME_HEADER.unpack_from(self._pending)
            if stream_type > STREAM_STDERR or frame_size > MAX_FRAME_SIZE:
                # Not multiplexed, emit as-is
                lines.extend(_split_lines(_decode(self._pending)))
                self._pending = b""
                break

            total = FRAME_HEADER_SIZE + frame_size
            if len(self._pending) < total:
                break

            lines.extend(_split_lines(_decode(self._pending[FRAME_HEADER_SIZE:total])))
            self._pending = self._pending[total:]

        return lines

    def flush(self) -> List[str]:
        """Lines from bytes still buffered when the stream ends"""
        lines = _split_lines(demultiplex(self._pending))
        self._pending = b""
        return lines


class LogStream:
    """
    Live container log lines as an async iterator.

    Not restartable. There is no idle timeout: call cancel() (or use
    `async with`) to release the daemon connection.
    """

    def __init__(self, response: httpx.Response, container_id: str = ""):
        self.container_id = container_id
        self._response = response
        self._chunks = response.aiter_raw()
        self._decoder = FrameDecoder()
        self._lines: Deque[str] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "LogStream":
        return self

    async def __anext__(self) -> str:
        while not self._lines:
            if self._closed:
                raise StopAsyncIteration
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                logger.debug(f"Log stream for {self.container_id[:12]} ended")
                self._lines.extend(self._decoder.flush())
                await self.cancel()
                if not self._lines:
                    raise
                break
            except httpx.HTTPError as e:
                await self.cancel()
                raise DockerError(f"Log stream for {self.container_id[:12]} failed: {e}") from e
            self._lines.extend(self._decoder.feed(chunk))
        return self._lines.popleft()

    async def cancel(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()

    async def __aenter__(self) -> "LogStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()


async def get_logs(docker: DockerClient, container_id: str, tail: int = 100) -> str:
    """Last `tail` lines of a container's combined output"""
    try:
        raw = await docker.container_logs(container_id, tail=tail)
    except NotFoundError:
        return CONTAINER_NOT_FOUND_MESSAGE
    return demultiplex(raw)


async def stream_logs(docker: DockerClient, container_id: str, tail: int = 50) -> LogStream:
    """Follow a container's logs, starting with the last `tail` lines"""
    response = await docker.open_log_stream(container_id, tail=tail)
    return LogStream(response, container_id)
